"""Sum-of-diameters, baseline and nadir metrics per patient assessment.

Assessment index 0 is the screening (baseline) assessment; positive indices
are sequential post-baseline assessments. A missing sum of diameters stays
missing: it is never read as a zero tumor burden.
"""

import logging

import numpy as np
import pandas as pd

from pfsderive.errors import DateInconsistencyWarning
from pfsderive.harmonize.harmonizer import CRFDataset
from pfsderive.qa.diagnostics import Diagnostics

logger = logging.getLogger(__name__)

STAGE = "lesions"

KEY = ["patient_id", "assessment_index"]

MEASURABLE = "measurable"
NON_MEASURABLE = "non-measurable"
NOT_ASSESSED = "not assessed"


def assessment_dates(dataset: CRFDataset) -> pd.DataFrame:
    """Every dated tumor-assessment row: patient_id, assessment_index, evaluation_date, source."""
    frames = []
    for name in ("baseline_measurable", "baseline_nonmeasurable"):
        df = getattr(dataset, name)
        frames.append(df[["patient_id", "evaluation_date"]].assign(assessment_index=0, source=name))
    for name in ("post_measurable", "post_nonmeasurable", "new_lesions", "overall_response"):
        df = getattr(dataset, name)
        frames.append(df[KEY + ["evaluation_date"]].assign(source=name))

    dates = pd.concat(frames, ignore_index=True)
    dates["evaluation_date"] = pd.to_datetime(dates["evaluation_date"])
    return dates[KEY + ["evaluation_date", "source"]]


def build_assessment_frame(dataset: CRFDataset, diagnostics: Diagnostics) -> pd.DataFrame:
    """Collapse the lesion, new-lesion and response tables to one row per assessment.

    The evaluation date of an assessment is the earliest date any source
    reports for it; sources that disagree are reported.

    Returns DataFrame with: patient_id, assessment_index, evaluation_date,
    sum_of_lesions, n_target_lesions, nontarget_present, new_lesion_at_visit,
    response_code
    """
    dates = assessment_dates(dataset)
    keys = dates[KEY].drop_duplicates()

    dated = dates.dropna(subset=["evaluation_date"])
    frame = keys.merge(
        dated.groupby(KEY, as_index=False)["evaluation_date"].min(),
        on=KEY, how="left", validate="one_to_one",
    )

    n_dates = dated.groupby(KEY)["evaluation_date"].nunique()
    for (pid, index), n in n_dates[n_dates > 1].items():
        seen = sorted(dated.loc[
            (dated["patient_id"] == pid) & (dated["assessment_index"] == index), "evaluation_date"
        ].dt.strftime("%Y-%m-%d").unique())
        diagnostics.warn(
            DateInconsistencyWarning, pid, STAGE,
            f"Assessment {index} has {n} different evaluation dates; earliest used",
            value=";".join(seen),
        )

    measurable = pd.concat([
        dataset.baseline_measurable[["patient_id", "diameter"]].assign(assessment_index=0),
        dataset.post_measurable[KEY + ["diameter"]],
    ], ignore_index=True)
    sums = measurable.groupby(KEY).agg(
        sum_of_lesions=("diameter", lambda d: d.sum(min_count=1)),
        n_target_lesions=("diameter", "count"),
    ).reset_index()
    frame = frame.merge(sums, on=KEY, how="left", validate="one_to_one")
    frame["n_target_lesions"] = frame["n_target_lesions"].fillna(0).astype(int)

    nontarget = pd.concat([
        dataset.baseline_nonmeasurable[["patient_id"]].assign(assessment_index=0, nontarget_present=True),
        dataset.post_nonmeasurable[KEY + ["nontarget_present"]],
    ], ignore_index=True)
    nontarget = nontarget.groupby(KEY, as_index=False)["nontarget_present"].any()
    frame = frame.merge(nontarget, on=KEY, how="left", validate="one_to_one")
    frame["nontarget_present"] = frame["nontarget_present"].astype("boolean").fillna(False).astype(bool)

    new = dataset.new_lesions[KEY + ["new_lesion"]].rename(columns={"new_lesion": "new_lesion_at_visit"})
    frame = frame.merge(new, on=KEY, how="left", validate="one_to_one")
    frame["new_lesion_at_visit"] = frame["new_lesion_at_visit"].astype("boolean").fillna(False).astype(bool)

    responses = dataset.overall_response[KEY + ["response_code"]]
    frame = frame.merge(responses, on=KEY, how="left", validate="one_to_one")
    frame["response_code"] = frame["response_code"].astype(object).where(frame["response_code"].notna(), None)

    return frame.sort_values(KEY, kind="stable").reset_index(drop=True)


def nadir_sequence(sums: list[float | None]) -> list[float | None]:
    """Running minimum of the sum of diameters, baseline included.

    ``sums[0]`` is the baseline. A missing sum carries the previous nadir
    forward. Without a numeric baseline there is no nadir.
    """
    if not sums or sums[0] is None or pd.isna(sums[0]):
        return [None] * len(sums)

    nadirs = [sums[0]]
    for value in sums[1:]:
        previous = nadirs[-1]
        nadirs.append(previous if value is None or pd.isna(value) else min(value, previous))
    return nadirs


def _percent(change: pd.Series, reference: pd.Series) -> pd.Series:
    """change / reference * 100; missing when either is missing or reference is 0."""
    valid = change.notna() & reference.notna() & (reference != 0)
    out = pd.Series(np.nan, index=change.index)
    out[valid] = change[valid] / reference[valid] * 100
    return out


def aggregate_lesions(frame: pd.DataFrame, diagnostics: Diagnostics) -> pd.DataFrame:
    """Add baseline, nadir and change metrics to the assessment frame.

    Adds: baseline_sum, baseline_disease, nadir, change_from_baseline,
    pct_change_from_baseline, change_from_nadir, pct_change_from_nadir
    """
    metrics = frame.sort_values(KEY, kind="stable").reset_index(drop=True)

    baseline_rows = metrics[metrics["assessment_index"] == 0].set_index("patient_id")
    metrics["baseline_sum"] = metrics["patient_id"].map(baseline_rows["sum_of_lesions"])
    has_nontarget = (
        metrics["patient_id"].map(baseline_rows["nontarget_present"])
        .astype("boolean").fillna(False).astype(bool)
    )
    metrics["baseline_disease"] = np.select(
        [metrics["baseline_sum"].notna(), has_nontarget],
        [MEASURABLE, NON_MEASURABLE],
        default=NOT_ASSESSED,
    )

    nadirs = []
    for pid, group in metrics.groupby("patient_id", sort=False):
        sums = group["sum_of_lesions"].tolist()
        if group["assessment_index"].iloc[0] != 0:
            # No baseline row: nothing to anchor the nadir to.
            nadirs.extend([None] * len(sums))
        else:
            nadirs.extend(nadir_sequence(sums))
        _check_date_order(pid, group, diagnostics)
    metrics["nadir"] = pd.Series(nadirs, index=metrics.index, dtype=float)

    metrics["change_from_baseline"] = metrics["sum_of_lesions"] - metrics["baseline_sum"]
    metrics["pct_change_from_baseline"] = _percent(metrics["change_from_baseline"], metrics["baseline_sum"])
    metrics["change_from_nadir"] = metrics["sum_of_lesions"] - metrics["nadir"]
    metrics["pct_change_from_nadir"] = _percent(metrics["change_from_nadir"], metrics["nadir"])

    n_patients = metrics["patient_id"].nunique()
    n_measurable = metrics.loc[metrics["baseline_disease"] == MEASURABLE, "patient_id"].nunique()
    logger.info("Lesion metrics: %d assessments, %d/%d patients with measurable baseline",
                len(metrics), n_measurable, n_patients)
    return metrics


def _check_date_order(pid: str, group: pd.DataFrame, diagnostics: Diagnostics) -> None:
    """Evaluation dates should not decrease along the assessment index."""
    dates = group["evaluation_date"].dropna()
    if len(dates) > 1 and not np.all(np.diff(dates.values.astype("int64")) >= 0):
        diagnostics.warn(
            DateInconsistencyWarning, pid, STAGE,
            "Evaluation dates decrease along the assessment sequence",
        )
