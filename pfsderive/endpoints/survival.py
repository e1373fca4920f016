"""Progression-free survival endpoint derivation.

Turns resolved event dates into the (time, event) pairs a survival
estimator such as lifelines.KaplanMeierFitter consumes.
"""

import logging

import pandas as pd
from lifelines.utils import datetimes_to_durations

from pfsderive.errors import DataGapError
from pfsderive.harmonize.vocabulary import (
    DEFAULT_VOCABULARY,
    DISEASE_PROGRESSION,
    Vocabulary,
    is_disease_progression,
    normalize_key,
)
from pfsderive.qa.diagnostics import Diagnostics
from pfsderive.utils.config import TrialConfig

logger = logging.getLogger(__name__)

STAGE = "pfs"

PFS_COLUMNS = [
    "patient_id", "site", "index_date", "resolved_date", "reason",
    "pfs_days", "pfs_time", "pfs_event",
]


def derive_pfs_event(
    events: pd.DataFrame, vocabulary: Vocabulary = DEFAULT_VOCABULARY
) -> pd.Series:
    """Binary PFS event indicator.

    Event = 1 if the resolved reason is disease progression, or the cause of
    death is disease progression, or the patient did not discontinue for
    progression and follow-up ended with death. Anything else is censored.
    """
    progressed = events["reason"] == DISEASE_PROGRESSION
    died_of_progression = events["death_cause"].map(
        lambda cause: is_disease_progression(cause, vocabulary)
    ).astype(bool)
    died = events["followup_reason"].map(normalize_key) == "death"
    return (progressed | died_of_progression | (~progressed & died)).astype(int)


def derive_pfs(
    events: pd.DataFrame,
    config: TrialConfig,
    diagnostics: Diagnostics,
    vocabulary: Vocabulary = DEFAULT_VOCABULARY,
) -> pd.DataFrame:
    """Derive Progression-Free Survival from resolved event dates.

    Definition:
        Time: (resolved date - index date) in days / (365.25 / 12), months
        Event: see derive_pfs_event
        Censoring: resolved date of event-free patients (last assessment
            for patients still active)

    Patients without a resolved date, or whose resolved date precedes the
    index date, are reported as data gaps and left out.

    Returns DataFrame with: patient_id, site, index_date, resolved_date,
    reason, pfs_days, pfs_time, pfs_event
    """
    pfs = events.copy()

    undated = pfs["resolved_date"].isna()
    for pid in pfs.loc[undated, "patient_id"]:
        diagnostics.error(DataGapError(pid, "No resolved discontinuation date"), STAGE)
    pfs = pfs[~undated]

    if pfs.empty:
        return pd.DataFrame(columns=PFS_COLUMNS)

    cutoff = pfs["resolved_date"].max()
    days, _ = datetimes_to_durations(
        pfs["index_date"], pfs["resolved_date"], fill_date=cutoff, freq="D"
    )
    pfs["pfs_days"] = days

    negative = pfs["pfs_days"] < 0
    for pid, d in zip(pfs.loc[negative, "patient_id"], pfs.loc[negative, "pfs_days"]):
        diagnostics.error(
            DataGapError(pid, f"Resolved date is {int(-d)} days before the index date"),
            STAGE, value=int(d),
        )
    pfs = pfs[~negative].copy()

    pfs["pfs_time"] = pfs["pfs_days"] / config.days_per_month
    pfs["pfs_event"] = derive_pfs_event(pfs, vocabulary)

    logger.info(
        "PFS derived: %d patients, %d events", len(pfs), int(pfs["pfs_event"].sum())
    )
    return pfs[PFS_COLUMNS].sort_values("patient_id", kind="stable").reset_index(drop=True)
