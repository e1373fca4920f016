"""End-to-end tests: determinism, output files and survival-analysis compatibility."""

import pandas as pd
import pytest
from lifelines import KaplanMeierFitter

from pfsderive.endpoints.survival import PFS_COLUMNS
from pfsderive.errors import CohortIntegrityError
from pfsderive.pipeline import run_pipeline
from pfsderive.response.classifier import RESPONSE_COLUMNS
from pfsderive.utils.config import TrialConfig


def test_rerun_is_identical(harmonized, pfs_config, result, tmp_path):
    again = run_pipeline(harmonized, pfs_config)
    pd.testing.assert_frame_equal(again.pfs, result.pfs)
    pd.testing.assert_frame_equal(again.responses, result.responses)

    first = result.to_csv(tmp_path / "first")
    second = again.to_csv(tmp_path / "second")
    for name, path in first.items():
        assert path.read_bytes() == second[name].read_bytes(), name


def test_output_files(result, tmp_path):
    written = result.to_csv(tmp_path)
    assert set(written) == {"pfs_records", "response_records", "event_dates", "diagnostics"}
    pfs = pd.read_csv(written["pfs_records"])
    assert list(pfs.columns) == PFS_COLUMNS
    assert pfs["index_date"].str.match(r"^\d{4}-\d{2}-\d{2}$").all()
    responses = pd.read_csv(written["response_records"])
    assert list(responses.columns) == RESPONSE_COLUMNS


def test_kaplan_meier_accepts_pfs_table(result):
    kmf = KaplanMeierFitter()
    kmf.fit(result.pfs["pfs_time"], event_observed=result.pfs["pfs_event"], label="PFS")
    assert kmf.event_observed.sum() == result.pfs["pfs_event"].sum()
    assert 0.0 <= kmf.survival_function_.iloc[-1, 0] <= 1.0


def test_cohort_integrity_is_fatal(harmonized, pfs_config):
    raw = {**pfs_config.raw, "trial": {**pfs_config.raw["trial"], "expected_cohort_size": 10}}
    with pytest.raises(CohortIntegrityError):
        run_pipeline(harmonized, TrialConfig.from_dict(raw))


def test_synthetic_has_events_and_censoring(result):
    events = result.pfs["pfs_event"]
    assert 0 < events.sum() < len(events)
    assert {"progression", "last assessment"} <= set(result.events["date_source"])


def test_csv_keeps_full_float_precision(result, tmp_path):
    written = result.to_csv(tmp_path)
    pfs = pd.read_csv(written["pfs_records"], float_precision="round_trip")
    assert pfs["pfs_time"].tolist() == result.pfs["pfs_time"].tolist()
    responses = pd.read_csv(written["response_records"], float_precision="round_trip")
    pd.testing.assert_series_equal(
        responses["pct_change_from_nadir"], result.responses["pct_change_from_nadir"],
        check_exact=True,
    )
