"""Per-patient data-quality findings collected during a pipeline run.

Findings never stop the run. They are emitted as Python warnings, logged,
and written out as the review table (``diagnostics.csv``).
"""

import logging
import warnings
from dataclasses import dataclass, field, asdict

import pandas as pd

logger = logging.getLogger(__name__)

COLUMNS = ["patient_id", "stage", "category", "message", "value"]


@dataclass(frozen=True)
class Finding:
    patient_id: str
    stage: str
    category: str
    message: str
    value: str = ""


@dataclass
class Diagnostics:
    """Accumulates findings from every stage of one run."""

    findings: list[Finding] = field(default_factory=list)

    def warn(self, category: type[Warning], patient_id: str, stage: str, message: str, value=None) -> None:
        self._add(patient_id, stage, category.__name__, message, value)
        logger.warning("[%s] %s: %s", stage, patient_id, message)
        warnings.warn(f"{patient_id}: {message}", category, stacklevel=2)

    def error(self, exc: Exception, stage: str, value=None) -> None:
        patient_id = getattr(exc, "patient_id", "")
        message = getattr(exc, "message", str(exc))
        self._add(patient_id, stage, type(exc).__name__, message, value)
        logger.error("[%s] %s: %s", stage, patient_id, message)

    def info(self, patient_id: str, stage: str, message: str, value=None) -> None:
        self._add(patient_id, stage, "info", message, value)
        logger.info("[%s] %s: %s", stage, patient_id, message)

    def _add(self, patient_id, stage, category, message, value) -> None:
        self.findings.append(Finding(
            patient_id=str(patient_id),
            stage=stage,
            category=category,
            message=message,
            value="" if value is None else str(value),
        ))

    def of_category(self, category: str) -> list[Finding]:
        return [f for f in self.findings if f.category == category]

    def patients_with(self, category: str) -> set[str]:
        return {f.patient_id for f in self.of_category(category)}

    def to_frame(self) -> pd.DataFrame:
        if not self.findings:
            return pd.DataFrame(columns=COLUMNS)
        df = pd.DataFrame([asdict(f) for f in self.findings], columns=COLUMNS)
        return df.sort_values(["patient_id", "stage", "category", "message"], kind="stable").reset_index(drop=True)

    def __len__(self) -> int:
        return len(self.findings)
