"""Analysis cohort: treated patients minus known withdrawals."""

import logging

import pandas as pd

from pfsderive.errors import CohortIntegrityError
from pfsderive.utils.config import TrialConfig

logger = logging.getLogger(__name__)


def site_of(patient_id: str, prefix_length: int = 3) -> str:
    """Site code encoded in the fixed-width prefix of a patient identifier."""
    return str(patient_id)[:prefix_length]


def derive_cohort(intake: pd.DataFrame, config: TrialConfig) -> pd.DataFrame:
    """Derive the analysis cohort from the treatment-intake table.

    A patient enters the cohort when at least one administration has a
    first-dose date; the index date is the earliest such date. Subjects
    listed under ``trial.withdrawn_subjects`` are excluded.

    Returns DataFrame with: patient_id, site, index_date (one row per patient,
    sorted by patient_id).

    Raises CohortIntegrityError when ``trial.expected_cohort_size`` is set and
    the derived cohort has a different size.
    """
    dosed = intake[intake["first_dose_date"].notna()]
    cohort = (
        dosed.groupby("patient_id", as_index=False, sort=True)["first_dose_date"]
        .min()
        .rename(columns={"first_dose_date": "index_date"})
    )

    withdrawn = set(config.withdrawn_subjects)
    missing = withdrawn - set(cohort["patient_id"])
    if missing:
        logger.warning("Withdrawn subject(s) not among dosed patients: %s", sorted(missing))
    cohort = cohort[~cohort["patient_id"].isin(withdrawn)]

    cohort = cohort.assign(
        site=cohort["patient_id"].map(lambda pid: site_of(pid, config.site_prefix_length))
    )[["patient_id", "site", "index_date"]].reset_index(drop=True)

    logger.info(
        "Cohort: %d dosed, %d withdrawn, %d analysed",
        dosed["patient_id"].nunique(), len(withdrawn - missing), len(cohort),
    )

    expected = config.expected_cohort_size
    if expected is not None and len(cohort) != expected:
        raise CohortIntegrityError(
            f"Analysis cohort has {len(cohort)} patients, expected {expected}"
        )
    return cohort


def restrict_to_cohort(df: pd.DataFrame, cohort: pd.DataFrame) -> pd.DataFrame:
    """Restrict a patient-keyed table to the analysis cohort."""
    return df[df["patient_id"].isin(cohort["patient_id"])].copy()
