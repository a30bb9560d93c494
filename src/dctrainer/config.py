"""Configuration for the trainer."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class StorageConfig(BaseModel):
    """Local progress storage."""

    db_path: Path = Path(".dctrainer") / "progress.db"


class ExamConfig(BaseModel):
    """Practice exam settings."""

    question_count: int = Field(default=35, ge=1, le=200)
    passing_score: int = Field(default=70, ge=0, le=100)
    duration_minutes: int = Field(default=90, ge=1, le=600)


class SuggestionConfig(BaseModel):
    """Fuzzy matching and hint settings."""

    threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_suggestions: int = Field(default=3, ge=1, le=20)
    contextual_limit: int = Field(default=5, ge=1, le=20)


class TrainerConfig(BaseModel):
    """Master configuration for dctrainer."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    exam: ExamConfig = Field(default_factory=ExamConfig)
    suggestions: SuggestionConfig = Field(default_factory=SuggestionConfig)
    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @classmethod
    def from_file(cls, config_path: Path) -> TrainerConfig:
        """Load configuration from YAML file."""
        import yaml

        with open(config_path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
        return cls.model_validate(raw or {})

    def to_file(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        import yaml

        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        with open(config_path, "w", encoding="utf-8") as fh:
            yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
