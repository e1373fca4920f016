"""Tests for lesion aggregation and response classification."""

import warnings

import numpy as np
import pandas as pd
import pytest

from pfsderive.cohort.filter import derive_cohort
from pfsderive.errors import DateInconsistencyWarning, UnmappedCategoryWarning
from pfsderive.qa.diagnostics import Diagnostics
from pfsderive.response.classifier import classify_responses
from pfsderive.response.lesions import (
    MEASURABLE,
    NON_MEASURABLE,
    aggregate_lesions,
    build_assessment_frame,
    nadir_sequence,
)


def _post(pid, index, date, diameter):
    return {"patient_id": pid, "assessment_index": index, "evaluation_date": date, "diameter": diameter}


def _classify(dataset, config):
    diagnostics = Diagnostics()
    cohort = derive_cohort(dataset.intake, config)
    frame = build_assessment_frame(dataset, diagnostics)
    metrics = aggregate_lesions(frame, diagnostics)
    return classify_responses(metrics, cohort, diagnostics), diagnostics


@pytest.fixture
def patient_d(make_dataset):
    return make_dataset(
        intake=[{"patient_id": "101-004", "first_dose_date": "2023-01-05"}],
        baseline_measurable=[
            {"patient_id": "101-004", "evaluation_date": "2023-01-02", "diameter": 25.0},
            {"patient_id": "101-004", "evaluation_date": "2023-01-02", "diameter": 15.0},
        ],
        post_measurable=[
            _post("101-004", 1, "2023-03-01", 30.0), _post("101-004", 1, "2023-03-01", 20.0),
            _post("101-004", 2, "2023-05-01", 18.0), _post("101-004", 2, "2023-05-01", 12.0),
            _post("101-004", 3, "2023-07-01", 27.0), _post("101-004", 3, "2023-07-01", 18.0),
        ],
    )


def test_nadir_scenario(patient_d, small_config):
    responses, _ = _classify(patient_d, small_config)
    assert responses["sum_of_lesions"].tolist() == [40.0, 50.0, 30.0, 45.0]
    assert responses["nadir"].tolist() == [40.0, 40.0, 30.0, 30.0]
    last = responses.iloc[-1]
    assert last["pct_change_from_nadir"] == pytest.approx(50.0)
    assert last["change_from_nadir"] == pytest.approx(15.0)
    assert last["pct_change_from_baseline"] == pytest.approx(12.5)
    # +10 mm / +25% over the baseline nadir at assessment 1, +15 mm / +50% at 3
    assert responses["lesion_progression"].tolist() == [False, True, False, True]
    assert set(responses["baseline_disease"]) == {MEASURABLE}


def test_non_measurable_baseline_has_no_numeric_baseline(make_dataset, small_config):
    dataset = make_dataset(
        intake=[{"patient_id": "101-005", "first_dose_date": "2023-01-05"}],
        baseline_nonmeasurable=[{"patient_id": "101-005", "evaluation_date": "2023-01-02"}],
        post_nonmeasurable=[
            {"patient_id": "101-005", "assessment_index": 1,
             "evaluation_date": "2023-03-01", "nontarget_present": "Yes"},
        ],
        post_measurable=[_post("101-005", 2, "2023-05-01", 12.0)],
    )
    responses, _ = _classify(dataset, small_config)
    assert set(responses["baseline_disease"]) == {NON_MEASURABLE}
    assert responses["baseline_sum"].isna().all()
    assert responses["change_from_baseline"].isna().all()
    assert responses["pct_change_from_baseline"].isna().all()
    assert responses["nadir"].isna().all()
    assert responses.loc[responses["assessment_index"] == 2, "sum_of_lesions"].item() == 12.0


def test_nadir_sequence_carries_forward_missing_sums():
    assert nadir_sequence([40.0, None, 35.0, np.nan, 50.0]) == [40.0, 40.0, 35.0, 35.0, 35.0]
    assert nadir_sequence([None, 20.0]) == [None, None]
    assert nadir_sequence([]) == []


def test_missing_sum_is_not_zero(make_dataset, small_config):
    dataset = make_dataset(
        intake=[{"patient_id": "101-006", "first_dose_date": "2023-01-05"}],
        baseline_measurable=[{"patient_id": "101-006", "evaluation_date": "2023-01-02", "diameter": 20.0}],
        post_measurable=[_post("101-006", 1, "2023-03-01", None)],
        overall_response=[{"patient_id": "101-006", "assessment_index": 1,
                           "evaluation_date": "2023-03-01", "response_code": "NE"}],
    )
    responses, _ = _classify(dataset, small_config)
    visit = responses.set_index("assessment_index").loc[1]
    assert pd.isna(visit["sum_of_lesions"])
    assert pd.isna(visit["change_from_baseline"])
    assert visit["nadir"] == 20.0
    assert visit["response"] == "unknown"


def test_zero_baseline_gives_missing_percent(make_dataset, small_config):
    dataset = make_dataset(
        intake=[{"patient_id": "101-007", "first_dose_date": "2023-01-05"}],
        baseline_measurable=[{"patient_id": "101-007", "evaluation_date": "2023-01-02", "diameter": 0.0}],
        post_measurable=[_post("101-007", 1, "2023-03-01", 6.0)],
    )
    responses, _ = _classify(dataset, small_config)
    visit = responses.set_index("assessment_index").loc[1]
    assert visit["change_from_baseline"] == 6.0
    assert pd.isna(visit["pct_change_from_baseline"])
    assert pd.isna(visit["pct_change_from_nadir"])


def test_new_lesion_flag_propagates(make_dataset, small_config):
    rows = [
        {"patient_id": "101-008", "assessment_index": i, "evaluation_date": date, "new_lesion": flag}
        for i, date, flag in [(1, "2023-03-01", "No"), (2, "2023-05-01", "Yes"), (3, "2023-07-01", "No")]
    ]
    dataset = make_dataset(
        intake=[{"patient_id": "101-008", "first_dose_date": "2023-01-05"}],
        new_lesions=rows,
        overall_response=[{"patient_id": "101-008", "assessment_index": 4,
                           "evaluation_date": "2023-09-01", "response_code": "Progressive Disease (PD)"}],
    )
    responses, _ = _classify(dataset, small_config)
    assert responses["new_lesion"].tolist() == [False, True, True, True]
    assert responses["response"].iloc[-1] == "PD"


def test_unmapped_response_passes_through_as_unknown(make_dataset, small_config):
    dataset = make_dataset(
        intake=[{"patient_id": "101-009", "first_dose_date": "2023-01-05"}],
        overall_response=[{"patient_id": "101-009", "assessment_index": 1,
                           "evaluation_date": "2023-03-01", "response_code": "Mixed response"}],
    )
    with pytest.warns(UnmappedCategoryWarning):
        responses, diagnostics = _classify(dataset, small_config)
    assert responses["response"].tolist() == ["unknown"]
    assert responses["response_code"].tolist() == ["Mixed response"]
    assert diagnostics.patients_with("UnmappedCategoryWarning") == {"101-009"}


def test_undated_rows_and_non_cohort_patients_excluded(make_dataset, small_config):
    dataset = make_dataset(
        intake=[
            {"patient_id": "101-010", "first_dose_date": "2023-01-05"},
            {"patient_id": "101-011", "first_dose_date": None},
        ],
        overall_response=[
            {"patient_id": "101-010", "assessment_index": 1,
             "evaluation_date": "2023-03-01", "response_code": "SD"},
            {"patient_id": "101-010", "assessment_index": 2,
             "evaluation_date": None, "response_code": "SD"},
            {"patient_id": "101-011", "assessment_index": 1,
             "evaluation_date": "2023-03-01", "response_code": "SD"},
        ],
    )
    responses, diagnostics = _classify(dataset, small_config)
    assert responses[["patient_id", "assessment_index"]].values.tolist() == [["101-010", 1]]
    assert any("no evaluation date" in f.message for f in diagnostics.findings)


def test_conflicting_assessment_dates_use_earliest(make_dataset, small_config):
    dataset = make_dataset(
        intake=[{"patient_id": "101-012", "first_dose_date": "2023-01-05"}],
        post_measurable=[_post("101-012", 1, "2023-03-03", 10.0)],
        overall_response=[{"patient_id": "101-012", "assessment_index": 1,
                           "evaluation_date": "2023-03-01", "response_code": "SD"}],
    )
    with pytest.warns(DateInconsistencyWarning):
        responses, _ = _classify(dataset, small_config)
    assert responses["evaluation_date"].tolist() == [pd.Timestamp("2023-03-01")]


def test_decreasing_dates_are_flagged(make_dataset, small_config):
    dataset = make_dataset(
        intake=[{"patient_id": "101-013", "first_dose_date": "2023-01-05"}],
        post_measurable=[_post("101-013", 1, "2023-05-01", 10.0), _post("101-013", 2, "2023-03-01", 12.0)],
    )
    with pytest.warns(DateInconsistencyWarning):
        responses, _ = _classify(dataset, small_config)
    # Data-quality signal only; both rows are kept
    assert len(responses) == 2


def test_nadir_never_increases(result):
    for _, group in result.responses.groupby("patient_id"):
        nadir = group["nadir"].dropna().values
        assert np.all(np.diff(nadir) <= 0)


def test_new_lesion_flag_monotone(result):
    for _, group in result.responses.groupby("patient_id"):
        flags = group["new_lesion"].astype(int).values
        assert np.all(np.diff(flags) >= 0)


def test_responses_sorted_and_keyed(result):
    keys = result.responses[["patient_id", "assessment_index"]]
    assert not keys.duplicated().any()
    assert keys.equals(keys.sort_values(["patient_id", "assessment_index"]).reset_index(drop=True))
    assert result.responses["evaluation_date"].notna().all()
    assert set(result.responses["patient_id"]).issubset(set(result.cohort["patient_id"]))


def test_lesion_stages_free_of_downcasting_warnings(make_dataset):
    dataset = make_dataset(
        intake=[{"patient_id": "101-014", "first_dose_date": "2023-01-05"}],
        baseline_measurable=[{"patient_id": "101-014", "evaluation_date": "2023-01-02", "diameter": 20.0}],
        baseline_nonmeasurable=[{"patient_id": "101-014", "evaluation_date": "2023-01-02"}],
        post_measurable=[_post("101-014", 1, "2023-03-01", 18.0)],
        post_nonmeasurable=[{"patient_id": "101-014", "assessment_index": 2,
                             "evaluation_date": "2023-05-01", "nontarget_present": "Yes"}],
        new_lesions=[{"patient_id": "101-014", "assessment_index": 2,
                      "evaluation_date": "2023-05-01", "new_lesion": "No"}],
        overall_response=[{"patient_id": "101-014", "assessment_index": 1,
                           "evaluation_date": "2023-03-01", "response_code": "SD"}],
    )
    with warnings.catch_warnings():
        warnings.simplefilter("error", FutureWarning)
        frame = build_assessment_frame(dataset, Diagnostics())
        metrics = aggregate_lesions(frame, Diagnostics())
    assert frame["nontarget_present"].tolist() == [True, False, True]
    assert frame["new_lesion_at_visit"].tolist() == [False, False, False]
    assert metrics["baseline_disease"].tolist() == [MEASURABLE] * 3
