"""Config-driven harmonization of CRF exports to a typed, keyed schema.

Maps raw tables from any source (Excel CRF export, synthetic) to the
nine-table ``CRFDataset``. Join cardinalities are declared per table and
enforced here, so downstream stages can merge without guessing.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from pfsderive.errors import CardinalityError
from pfsderive.ingest.base import TABLES
from pfsderive.utils.config import TrialConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSchema:
    columns: tuple[str, ...]
    dates: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()
    numbers: tuple[str, ...] = ()
    # Columns forming a unique key; empty means many rows per key are allowed.
    unique_key: tuple[str, ...] = ()


SCHEMAS = {
    "intake": TableSchema(
        columns=("patient_id", "first_dose_date"),
        dates=("first_dose_date",),
    ),
    "discontinuation": TableSchema(
        columns=(
            "patient_id", "discontinuation_date", "reason", "other_reason",
            "radiological_progression_date", "biological_progression_date",
            "clinical_progression_date", "recist_progression",
        ),
        dates=(
            "discontinuation_date", "radiological_progression_date",
            "biological_progression_date", "clinical_progression_date",
        ),
        flags=("recist_progression",),
        unique_key=("patient_id",),
    ),
    "end_of_study": TableSchema(
        columns=(
            "patient_id", "end_of_study_date", "followup_continued",
            "followup_reason", "death_cause",
        ),
        dates=("end_of_study_date",),
        flags=("followup_continued",),
        unique_key=("patient_id",),
    ),
    "baseline_measurable": TableSchema(
        columns=("patient_id", "evaluation_date", "diameter"),
        dates=("evaluation_date",),
        numbers=("diameter",),
    ),
    "baseline_nonmeasurable": TableSchema(
        columns=("patient_id", "evaluation_date"),
        dates=("evaluation_date",),
    ),
    "post_measurable": TableSchema(
        columns=("patient_id", "assessment_index", "evaluation_date", "diameter"),
        dates=("evaluation_date",),
        numbers=("diameter",),
    ),
    "post_nonmeasurable": TableSchema(
        columns=("patient_id", "assessment_index", "evaluation_date", "nontarget_present"),
        dates=("evaluation_date",),
        flags=("nontarget_present",),
    ),
    "new_lesions": TableSchema(
        columns=("patient_id", "assessment_index", "evaluation_date", "new_lesion"),
        dates=("evaluation_date",),
        flags=("new_lesion",),
        unique_key=("patient_id", "assessment_index"),
    ),
    "overall_response": TableSchema(
        columns=("patient_id", "assessment_index", "evaluation_date", "response_code"),
        dates=("evaluation_date",),
        unique_key=("patient_id", "assessment_index"),
    ),
}

# Columns a source must supply; the rest are created empty when absent.
REQUIRED = {
    "intake": ("patient_id", "first_dose_date"),
    "discontinuation": ("patient_id", "discontinuation_date", "reason"),
    "end_of_study": ("patient_id", "end_of_study_date"),
    "baseline_measurable": ("patient_id", "diameter"),
    "baseline_nonmeasurable": ("patient_id",),
    "post_measurable": ("patient_id", "assessment_index", "diameter"),
    "post_nonmeasurable": ("patient_id", "assessment_index"),
    "new_lesions": ("patient_id", "assessment_index", "new_lesion"),
    "overall_response": ("patient_id", "assessment_index", "response_code"),
}

TRUE_VALUES = {"true", "yes", "y", "1", "1.0", "x", "checked", "ticked"}
FALSE_VALUES = {"false", "no", "n", "0", "0.0", "unchecked", ""}


def to_flag(value) -> bool:
    """Interpret a CRF checkbox; blank counts as unchecked."""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return False
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    text = str(value).strip().casefold()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"Unrecognized checkbox value: {value!r}")


@dataclass(frozen=True)
class CRFDataset:
    """Unified CRF dataset, one typed table per export sheet."""

    intake: pd.DataFrame
    discontinuation: pd.DataFrame
    end_of_study: pd.DataFrame
    baseline_measurable: pd.DataFrame
    baseline_nonmeasurable: pd.DataFrame
    post_measurable: pd.DataFrame
    post_nonmeasurable: pd.DataFrame
    new_lesions: pd.DataFrame
    overall_response: pd.DataFrame

    def tables(self) -> dict[str, pd.DataFrame]:
        return {name: getattr(self, name) for name in TABLES}

    def to_parquet(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        for name, df in self.tables().items():
            df.to_parquet(path / f"{name}.parquet", index=False)

    @classmethod
    def from_parquet(cls, path: Path | str) -> "CRFDataset":
        path = Path(path)
        return cls(**{name: pd.read_parquet(path / f"{name}.parquet") for name in TABLES})

    def summary(self) -> None:
        n = self.intake["patient_id"].nunique()
        n_assessed = pd.concat([
            self.post_measurable["patient_id"],
            self.post_nonmeasurable["patient_id"],
        ]).nunique()
        print(f"CRF dataset: {n} patients with intake records")
        print(f"  Discontinuation records: {len(self.discontinuation)}")
        print(f"  End-of-study records: {len(self.end_of_study)}")
        print(f"  Baseline target lesions: {len(self.baseline_measurable)}")
        print(f"  Post-baseline lesion rows: {len(self.post_measurable)}")
        print(f"  Patients with post-baseline assessments: {n_assessed}")


class Harmonizer:
    """Map raw CRF tables to the unified CRFDataset schema."""

    def __init__(self, config: TrialConfig):
        self.config = config

    def harmonize(self, raw: dict[str, pd.DataFrame]) -> CRFDataset:
        tables = {}
        for name in TABLES:
            df = raw.get(name)
            if df is None or (df.empty and len(df.columns) == 0):
                df = pd.DataFrame(columns=list(SCHEMAS[name].columns))
            tables[name] = self._harmonize_table(name, df.copy())
        return CRFDataset(**tables)

    def _harmonize_table(self, name: str, df: pd.DataFrame) -> pd.DataFrame:
        schema = SCHEMAS[name]

        # Ensure required columns exist
        for col in REQUIRED[name]:
            if col not in df.columns:
                raise ValueError(f"Missing required column in {name}: {col}")
        for col in schema.columns:
            if col not in df.columns:
                df[col] = np.nan

        df = df[list(schema.columns)]
        df = df[df["patient_id"].notna()].copy()
        df["patient_id"] = df["patient_id"].astype(str).str.strip()

        if "assessment_index" in df.columns:
            df = df[df["assessment_index"].notna()].copy()
            df["assessment_index"] = df["assessment_index"].astype(int)
            # Index 0 is the screening assessment, held in the baseline tables
            bad = df[df["assessment_index"] < 1]
            if not bad.empty:
                rows = sorted(set(zip(bad["patient_id"], bad["assessment_index"])))
                raise ValueError(
                    f"{name}: post-baseline assessment index must be >= 1, got {rows}"
                )

        for col in schema.dates:
            before = df[col].notna().sum()
            df[col] = pd.to_datetime(df[col], errors="coerce")
            lost = before - df[col].notna().sum()
            if lost:
                logger.warning("%s.%s: %d unparseable dates treated as missing", name, col, lost)

        for col in schema.flags:
            df[col] = df[col].map(to_flag).astype(bool)

        for col in schema.numbers:
            df[col] = pd.to_numeric(df[col], errors="raise").astype(float)

        for col in schema.columns:
            if col not in schema.dates + schema.flags + schema.numbers + ("patient_id", "assessment_index"):
                df[col] = df[col].astype(object).where(df[col].notna(), None)

        if schema.unique_key:
            df = self._enforce_unique(name, df, schema.unique_key)

        sort_cols = [c for c in ("patient_id", "assessment_index") if c in df.columns]
        return df.sort_values(sort_cols, kind="stable").reset_index(drop=True)

    @staticmethod
    def _enforce_unique(name: str, df: pd.DataFrame, key: tuple[str, ...]) -> pd.DataFrame:
        """Collapse exact duplicates; conflicting duplicates are fatal."""
        df = df.drop_duplicates()
        dupes = df[df.duplicated(list(key), keep=False)]
        if dupes.empty:
            return df

        if name == "new_lesions":
            # A new lesion ticked on any duplicate row counts as detected.
            agg = {c: ("max" if c in ("evaluation_date", "new_lesion") else "first")
                   for c in df.columns if c not in key}
            logger.warning("new_lesions: %d duplicate keys merged", dupes[list(key)].drop_duplicates().shape[0])
            return df.groupby(list(key), as_index=False, sort=True).agg(agg)

        keys = dupes[list(key)].drop_duplicates().astype(str).agg("/".join, axis=1).tolist()
        raise CardinalityError(f"{name}: conflicting rows for key(s) {keys}")
