from pathlib import Path

import pytest
from pydantic import ValidationError

from dctrainer.config import TrainerConfig


def test_defaults() -> None:
    config = TrainerConfig()
    assert config.exam.question_count == 35
    assert config.exam.passing_score == 70
    assert config.exam.duration_minutes == 90
    assert config.suggestions.threshold == 0.6
    assert config.suggestions.max_suggestions == 3
    assert config.storage.db_path == Path(".dctrainer") / "progress.db"
    assert config.log_level == "WARNING"


def test_log_level_is_normalised_and_validated() -> None:
    assert TrainerConfig(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        TrainerConfig(log_level="chatty")


def test_exam_bounds_validated() -> None:
    with pytest.raises(ValidationError):
        TrainerConfig.model_validate({"exam": {"passing_score": 101}})
    with pytest.raises(ValidationError):
        TrainerConfig.model_validate({"exam": {"question_count": 0}})


def test_yaml_round_trip(tmp_path: Path) -> None:
    config = TrainerConfig.model_validate(
        {
            "storage": {"db_path": str(tmp_path / "progress.db")},
            "exam": {"question_count": 20, "duration_minutes": 30},
            "log_level": "info",
        }
    )
    path = tmp_path / "nested" / "dctrainer.yaml"
    config.to_file(path)
    loaded = TrainerConfig.from_file(path)
    assert loaded == config
    assert loaded.exam.question_count == 20
    assert loaded.storage.db_path == tmp_path / "progress.db"


def test_from_file_partial_and_empty(tmp_path: Path) -> None:
    path = tmp_path / "partial.yaml"
    path.write_text("exam:\n  passing_score: 80\n", encoding="utf-8")
    loaded = TrainerConfig.from_file(path)
    assert loaded.exam.passing_score == 80
    assert loaded.exam.question_count == 35

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert TrainerConfig.from_file(empty) == TrainerConfig()
