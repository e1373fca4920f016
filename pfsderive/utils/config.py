"""YAML configuration loader for trial definitions."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


@dataclass
class TrialConfig:
    """Trial configuration loaded from YAML."""

    raw: dict[str, Any]
    config_path: Path

    @classmethod
    def load(cls, path: str | Path) -> "TrialConfig":
        path = Path(path)
        with open(path) as f:
            raw = yaml.safe_load(f)
        return cls(raw=raw, config_path=path)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TrialConfig":
        return cls(raw=raw, config_path=Path("<memory>"))

    @property
    def trial_id(self) -> str:
        return self.raw["trial"]["id"]

    @property
    def trial_name(self) -> str:
        return self.raw["trial"]["name"]

    @property
    def source(self) -> str:
        return self.raw["trial"].get("source", "crf_export")

    @property
    def n_subjects(self) -> int | None:
        return self.raw["trial"].get("n_subjects")

    @property
    def seed(self) -> int:
        return self.raw["trial"].get("seed", 42)

    @property
    def expected_cohort_size(self) -> int | None:
        return self.raw["trial"].get("expected_cohort_size")

    @property
    def withdrawn_subjects(self) -> list[str]:
        return [str(s) for s in self.raw["trial"].get("withdrawn_subjects", [])]

    @property
    def site_prefix_length(self) -> int:
        return self.raw["trial"].get("site_prefix_length", 3)

    @property
    def days_per_month(self) -> float:
        return self.get("endpoints", "pfs", "days_per_month", default=365.25 / 12)

    @property
    def day_difference_range(self) -> tuple[int, int]:
        lo, hi = self.get("qc", "day_difference_range", default=[0, 42])
        return int(lo), int(hi)

    def get(self, *keys: str, default: Any = None) -> Any:
        """Nested dict access: config.get('qc', 'day_difference_range')"""
        d = self.raw
        for k in keys:
            if isinstance(d, dict):
                d = d.get(k, default)
            else:
                return default
        return d
