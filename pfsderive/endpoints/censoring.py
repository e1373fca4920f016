"""Censoring at the last tumor assessment for patients still on study."""

import logging

import pandas as pd

from pfsderive.errors import DataGapError
from pfsderive.harmonize.vocabulary import ACTIVE, normalize_key
from pfsderive.qa.diagnostics import Diagnostics

logger = logging.getLogger(__name__)

STAGE = "censoring"

DEATH = "death"


def last_assessment_date(patient_id: str, assessment_dates: pd.DataFrame) -> pd.Timestamp:
    """Latest non-missing tumor-assessment date for one patient.

    Raises DataGapError when the patient has no dated assessment.
    """
    dates = assessment_dates.loc[
        assessment_dates["patient_id"] == patient_id, "evaluation_date"
    ].dropna()
    if dates.empty:
        raise DataGapError(patient_id, "Active patient has no dated tumor assessment")
    return dates.max()


def resolve_censoring(
    events: pd.DataFrame,
    assessment_dates: pd.DataFrame,
    diagnostics: Diagnostics,
) -> pd.DataFrame:
    """Resolve the date of patients still active at discontinuation.

    Active patients whose end-of-study form reports death are dated by that
    form (a reported death is an event). Every other active patient, and a
    reported death without an end-of-study date, is censored at the last
    tumor assessment. Patients that cannot be dated are reported and dropped
    from the returned table.
    """
    censored = events.copy()
    active = censored["reason"] == ACTIVE
    died = censored["followup_reason"].map(normalize_key) == DEATH
    dated_death = active & died & censored["end_of_study_date"].notna()

    censored.loc[dated_death, "resolved_date"] = censored.loc[dated_death, "end_of_study_date"]
    censored.loc[dated_death, "date_source"] = "end of study"

    needs_censoring = active & ~dated_death
    gaps = []
    for idx in censored.index[needs_censoring]:
        pid = censored.at[idx, "patient_id"]
        try:
            censored.at[idx, "resolved_date"] = last_assessment_date(pid, assessment_dates)
            censored.at[idx, "date_source"] = "last assessment"
        except DataGapError as exc:
            diagnostics.error(exc, STAGE)
            gaps.append(idx)

    logger.info(
        "Active patients: %d dated by end of study, %d censored at last assessment, %d without usable date",
        int(dated_death.sum()), int(needs_censoring.sum()) - len(gaps), len(gaps),
    )
    return censored.drop(index=gaps).reset_index(drop=True)
