"""One classified response row per cohort patient and dated assessment."""

import logging

import pandas as pd

from pfsderive.errors import UnmappedCategoryWarning
from pfsderive.harmonize.vocabulary import DEFAULT_VOCABULARY, Vocabulary
from pfsderive.qa.diagnostics import Diagnostics
from pfsderive.response.lesions import KEY

logger = logging.getLogger(__name__)

STAGE = "responses"

# RECIST 1.1 progression of target lesions relative to the nadir
PROGRESSION_PCT = 20.0
PROGRESSION_MM = 5.0

RESPONSE_COLUMNS = [
    "patient_id", "assessment_index", "evaluation_date",
    "sum_of_lesions", "baseline_sum", "baseline_disease", "nadir",
    "change_from_baseline", "pct_change_from_baseline",
    "change_from_nadir", "pct_change_from_nadir",
    "new_lesion", "response_code", "response", "lesion_progression",
]


def new_lesion_ever(metrics: pd.DataFrame) -> pd.Series:
    """True from the first assessment recording a new lesion onwards."""
    ordered = metrics.sort_values(KEY, kind="stable")
    ever = ordered.groupby("patient_id", sort=False)["new_lesion_at_visit"].cummax()
    return ever.reindex(metrics.index).astype(bool)


def lesion_progression(metrics: pd.DataFrame) -> pd.Series:
    """Target-lesion growth of >=20% and >=5 mm above the nadir, or a new lesion."""
    grew = (
        (metrics["pct_change_from_nadir"] >= PROGRESSION_PCT)
        & (metrics["change_from_nadir"] >= PROGRESSION_MM)
    )
    return (grew | metrics["new_lesion"]).astype(bool)


def classify_responses(
    metrics: pd.DataFrame,
    cohort: pd.DataFrame,
    diagnostics: Diagnostics,
    vocabulary: Vocabulary = DEFAULT_VOCABULARY,
) -> pd.DataFrame:
    """Merge lesion metrics, new-lesion history and reported responses.

    Reported response codes are mapped through the response vocabulary;
    codes outside it become "unknown" and are reported. Rows of patients
    outside the cohort, and rows without an evaluation date, are left out.

    Returns DataFrame with RESPONSE_COLUMNS sorted by patient_id then
    assessment_index.
    """
    records = metrics[metrics["patient_id"].isin(cohort["patient_id"])].copy()
    records["new_lesion"] = new_lesion_ever(records)

    records["response"] = records["response_code"].map(vocabulary.response)
    known = records["response_code"].map(vocabulary.is_known_response).astype(bool)
    unmapped = records["response_code"].notna() & ~known
    for pid, index, code in records.loc[unmapped, KEY + ["response_code"]].itertuples(index=False):
        diagnostics.warn(
            UnmappedCategoryWarning, pid, STAGE,
            f"Unmapped overall response {code!r} at assessment {index}", value=code,
        )

    records["lesion_progression"] = lesion_progression(records)

    undated = records["evaluation_date"].isna()
    for pid, index in records.loc[undated, KEY].itertuples(index=False):
        diagnostics.info(pid, STAGE, f"Assessment {index} has no evaluation date; excluded")
    records = records[~undated]

    logger.info(
        "Responses classified: %d rows for %d patients",
        len(records), records["patient_id"].nunique(),
    )
    return records[RESPONSE_COLUMNS].sort_values(KEY, kind="stable").reset_index(drop=True)
