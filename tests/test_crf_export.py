"""Tests for the Excel CRF export adapter."""

import re

import pandas as pd
import pytest

from pfsderive.harmonize.harmonizer import Harmonizer
from pfsderive.ingest.crf_export import CRFExportSource, melt_diameters
from pfsderive.utils.config import TrialConfig


def _config(sheets):
    return TrialConfig.from_dict({
        "trial": {"id": "T-XL", "name": "Workbook trial", "expected_cohort_size": 2},
        "crf_export": {"sheets": sheets},
    })


SHEETS = {
    "intake": {
        "sheet": "Treatment",
        "columns": {"Patient": "patient_id", "Date of first dose": "first_dose_date"},
    },
    "post_measurable": {
        "sheet": "Target lesions",
        "columns": {
            "Patient": "patient_id",
            "Assessment": "assessment_index",
            "Date of evaluation": "evaluation_date",
        },
        "diameter_pattern": r"^Lesion \d+ diameter",
        "index_pattern": r"(\d+)",
    },
}


@pytest.fixture
def workbook(tmp_path):
    path = tmp_path / "crf_export.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame({
            "Patient": ["101-001", "101-001", "102-001"],
            "Date of first dose": ["2023-01-05", "2023-01-26", "2023-02-01"],
        }).to_excel(writer, sheet_name="Treatment", index=False)
        pd.DataFrame({
            "Patient": ["101-001", "101-001"],
            "Assessment": ["Assessment 1", "Assessment 2"],
            "Date of evaluation": ["2023-03-01", "2023-05-01"],
            "Lesion 1 diameter": [25.0, None],
            "Lesion 2 diameter": [15.0, None],
        }).to_excel(writer, sheet_name="Target lesions", index=False)
    return path


def test_load_workbook(workbook):
    config = _config(SHEETS)
    raw = CRFExportSource(config, workbook).load()
    dataset = Harmonizer(config).harmonize(raw)

    assert dataset.intake["patient_id"].nunique() == 2
    lesions = dataset.post_measurable
    assert lesions["assessment_index"].tolist() == [1, 1, 2]
    assert lesions["diameter"].iloc[:2].tolist() == [25.0, 15.0]
    # A visit with no measured lesion is kept with a missing diameter
    assert pd.isna(lesions["diameter"].iloc[2])
    assert dataset.discontinuation.empty
    assert list(dataset.overall_response.columns) == [
        "patient_id", "assessment_index", "evaluation_date", "response_code",
    ]


def test_missing_sheet(workbook):
    sheets = dict(SHEETS, new_lesions={"sheet": "New lesions", "columns": {}})
    with pytest.raises(ValueError, match="New lesions"):
        CRFExportSource(_config(sheets), workbook).load()


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        CRFExportSource(_config(SHEETS), tmp_path / "absent.xlsx").load()


def test_melt_diameters_one_row_per_lesion():
    wide = pd.DataFrame({
        "Patient": ["101-001", "101-002"],
        "Lesion 1 diameter": [12.0, None],
        "Lesion 2 diameter": [None, 30.0],
        "Lesion 3 diameter": [8.0, None],
    })
    long = melt_diameters(wide, re.compile(r"^Lesion \d+ diameter"))
    assert long["Patient"].tolist() == ["101-001", "101-001", "101-002"]
    assert long["diameter"].tolist() == [12.0, 8.0, 30.0]


def test_melt_requires_lesion_columns():
    with pytest.raises(ValueError):
        melt_diameters(pd.DataFrame({"Patient": ["101-001"]}), re.compile(r"^Lesion"))
