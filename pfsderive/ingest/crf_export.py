"""Excel CRF export adapter.

Reads the sheets of a CRF workbook and renames columns to the unified
schema as described under ``crf_export`` in the trial YAML::

    crf_export:
      path: data/raw/crf_export.xlsx
      sheets:
        post_measurable:
          sheet: "Tumor assessment"
          columns: {"Patient": patient_id, "Visit": assessment_index,
                    "Date of evaluation": evaluation_date}
          diameter_pattern: "^Lesion \\d+ diameter"
          index_pattern: "(\\d+)"

Wide lesion sheets (one column per lesion) are melted to one row per lesion.
"""

import logging
import re
from pathlib import Path

import pandas as pd

from pfsderive.ingest.base import TABLES, DataSource
from pfsderive.utils.config import TrialConfig

logger = logging.getLogger(__name__)


class CRFExportSource(DataSource):
    """Load a CRF Excel workbook and map it to the unified schema."""

    def __init__(self, config: TrialConfig, path: Path | str | None = None):
        self.config = config
        if path is None:
            path = Path(config.get("crf_export", "path"))
            if not path.is_absolute():
                path = config.config_path.parent / path
        self.path = Path(path)

    def load(self) -> dict[str, pd.DataFrame]:
        if not self.path.exists():
            raise FileNotFoundError(f"CRF export not found: {self.path}")

        workbook = pd.read_excel(self.path, sheet_name=None, dtype=object)
        tables = {}
        for name in TABLES:
            spec = self.config.get("crf_export", "sheets", name)
            if spec is None:
                logger.info("%s: not configured, using an empty table", name)
                tables[name] = pd.DataFrame()
                continue
            if spec["sheet"] not in workbook:
                raise ValueError(f"{name}: sheet {spec['sheet']!r} not found in {self.path.name}")
            tables[name] = normalize_sheet(workbook[spec["sheet"]], spec)
            logger.info("%s: %d rows from sheet %r", name, len(tables[name]), spec["sheet"])

        if tables["intake"].empty:
            raise ValueError("CRF export has no treatment-intake records")
        return tables


def normalize_sheet(sheet: pd.DataFrame, spec: dict) -> pd.DataFrame:
    """Rename, melt wide lesion columns and parse visit labels of one sheet."""
    df = sheet.copy()
    df.columns = [str(c).strip() for c in df.columns]
    df = df.dropna(how="all")

    pattern = spec.get("diameter_pattern")
    if pattern:
        df = melt_diameters(df, re.compile(pattern))

    df = df.rename(columns=spec.get("columns", {}))

    index_pattern = spec.get("index_pattern")
    if index_pattern and "assessment_index" in df.columns:
        df["assessment_index"] = df["assessment_index"].map(
            lambda label: _parse_index(label, re.compile(index_pattern))
        )
    return df.reset_index(drop=True)


def melt_diameters(df: pd.DataFrame, pattern: re.Pattern) -> pd.DataFrame:
    """One row per lesion from one column per lesion.

    A row with every lesion column blank keeps a single row with a missing
    diameter so the assessment itself is not lost.
    """
    lesion_cols = [c for c in df.columns if pattern.search(c)]
    if not lesion_cols:
        raise ValueError(f"No lesion columns match {pattern.pattern!r}")
    id_cols = [c for c in df.columns if c not in lesion_cols]

    df = df.reset_index(drop=True).rename_axis("_row").reset_index()
    long = df.melt(
        id_vars=["_row"] + id_cols, value_vars=lesion_cols,
        var_name="lesion", value_name="diameter",
    )
    measured = long[long["diameter"].notna()]
    blank_rows = set(df["_row"]) - set(measured["_row"])
    blank = long[long["_row"].isin(blank_rows)].drop_duplicates("_row")
    out = pd.concat([measured, blank], ignore_index=True)
    return out.sort_values(["_row", "lesion"], kind="stable").drop(columns=["_row", "lesion"])


def _parse_index(label, pattern: re.Pattern):
    if label is None or (not isinstance(label, str) and pd.isna(label)):
        return None
    if isinstance(label, (int, float)):
        return int(label)
    match = pattern.search(str(label))
    if match is None:
        raise ValueError(f"Cannot read an assessment index from {label!r}")
    return int(match.group(1))
