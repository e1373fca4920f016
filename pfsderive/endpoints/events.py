"""Discontinuation date, reason and progression flag per cohort patient.

Reconciles the discontinuation form, its progression-detail fields and the
end-of-study form into a single resolved date and canonical reason.
"""

import logging

import numpy as np
import pandas as pd

from pfsderive.errors import DateInconsistencyWarning, UnmappedCategoryWarning
from pfsderive.harmonize.vocabulary import (
    ACTIVE,
    DEFAULT_VOCABULARY,
    DISEASE_PROGRESSION,
    OTHER_CODE,
    UNMAPPED,
    Vocabulary,
    normalize_key,
)
from pfsderive.qa.diagnostics import Diagnostics
from pfsderive.utils.config import TrialConfig

logger = logging.getLogger(__name__)

STAGE = "event_dates"

EVENT_COLUMNS = [
    "patient_id", "site", "index_date",
    "has_discontinuation", "discontinuation_date", "reason_raw", "reason",
    "progression_date", "progression_confirmed",
    "end_of_study_date", "followup_reason", "death_cause",
    "resolved_date", "date_source", "qc_day_difference",
]


def resolve_event_dates(
    cohort: pd.DataFrame,
    discontinuation: pd.DataFrame,
    end_of_study: pd.DataFrame,
    config: TrialConfig,
    diagnostics: Diagnostics,
    vocabulary: Vocabulary = DEFAULT_VOCABULARY,
) -> pd.DataFrame:
    """Resolve one discontinuation date and reason per cohort patient.

    Rules:
        Reason: a raw code of "Other" is replaced by the free-text other
            reason, then mapped through the controlled vocabulary
            (unrecognized text becomes "unmapped" and is reported).
        Progression date: radiological, else clinical.
        Confirmed progression: the RECIST checkbox, forced true when the
            reason is disease progression.
        Resolved date: progression date, else discontinuation date.
        No discontinuation record: end-of-study date, reason "Active".

    For confirmed progressions the signed day difference between the
    discontinuation and progression dates is kept in ``qc_day_difference``
    and reported when outside ``qc.day_difference_range``.

    Returns DataFrame with EVENT_COLUMNS, one row per cohort patient.
    """
    disc = discontinuation.assign(has_discontinuation=True)
    eos = end_of_study[["patient_id", "end_of_study_date", "followup_reason", "death_cause"]]

    events = (
        cohort.merge(disc, on="patient_id", how="left", validate="one_to_one")
        .merge(eos, on="patient_id", how="left", validate="one_to_one")
    )
    events["has_discontinuation"] = events["has_discontinuation"].astype("boolean").fillna(False).astype(bool)
    events["recist_progression"] = events["recist_progression"].astype("boolean").fillna(False).astype(bool)

    is_other = events["reason"].map(normalize_key) == OTHER_CODE
    events["reason_raw"] = events["reason"].where(~is_other, events["other_reason"])

    events["reason"] = [
        _canonical_reason(pid, raw, has_disc, diagnostics, vocabulary)
        for pid, raw, has_disc in zip(
            events["patient_id"], events["reason_raw"], events["has_discontinuation"]
        )
    ]

    events["progression_date"] = events["radiological_progression_date"].fillna(
        events["clinical_progression_date"]
    )
    events["progression_confirmed"] = events["recist_progression"] | (
        events["reason"] == DISEASE_PROGRESSION
    )

    has_disc = events["has_discontinuation"]
    events["resolved_date"] = events["progression_date"].fillna(events["discontinuation_date"])
    events.loc[~has_disc, "resolved_date"] = events.loc[~has_disc, "end_of_study_date"]

    events["date_source"] = np.select(
        [
            has_disc & events["progression_date"].notna(),
            has_disc & events["discontinuation_date"].notna(),
            ~has_disc & events["end_of_study_date"].notna(),
        ],
        ["progression", "discontinuation", "end of study"],
        default="",
    )

    events["qc_day_difference"] = _qc_day_difference(events)
    _report_day_differences(events, config, diagnostics)
    _report_progression_without_reason(events, diagnostics)

    logger.info(
        "Event dates resolved for %d patients (%d without discontinuation record)",
        len(events), int((~has_disc).sum()),
    )
    return events[EVENT_COLUMNS].sort_values("patient_id", kind="stable").reset_index(drop=True)


def _canonical_reason(
    patient_id: str, raw, has_discontinuation: bool,
    diagnostics: Diagnostics, vocabulary: Vocabulary,
) -> str:
    if not has_discontinuation:
        return ACTIVE

    reason = vocabulary.reason(raw)
    if reason is None:
        diagnostics.warn(
            UnmappedCategoryWarning, patient_id, STAGE,
            "Discontinuation record has no reason", value="",
        )
        return UNMAPPED
    if reason == UNMAPPED:
        diagnostics.warn(
            UnmappedCategoryWarning, patient_id, STAGE,
            f"Unmapped discontinuation reason {raw!r}", value=raw,
        )
    return reason


def _qc_day_difference(events: pd.DataFrame) -> pd.Series:
    """Signed days from progression to discontinuation, confirmed progressions only."""
    delta = (events["discontinuation_date"] - events["progression_date"]).dt.days
    return delta.where(events["progression_confirmed"]).astype(float)


def _report_day_differences(events: pd.DataFrame, config: TrialConfig, diagnostics: Diagnostics) -> None:
    lo, hi = config.day_difference_range
    diffs = events.dropna(subset=["qc_day_difference"])
    outside = diffs[(diffs["qc_day_difference"] < lo) | (diffs["qc_day_difference"] > hi)]
    for pid, days in zip(outside["patient_id"], outside["qc_day_difference"]):
        diagnostics.warn(
            DateInconsistencyWarning, pid, STAGE,
            f"Discontinuation is {int(days)} days after progression (accepted {lo}..{hi})",
            value=int(days),
        )

    missing = events[
        events["progression_confirmed"] & events["progression_date"].isna()
    ]
    for pid in missing["patient_id"]:
        diagnostics.info(pid, STAGE, "Confirmed progression without a progression date")


def _report_progression_without_reason(events: pd.DataFrame, diagnostics: Diagnostics) -> None:
    flagged = events[
        events["recist_progression"] & (events["reason"] != DISEASE_PROGRESSION)
    ]
    for pid, reason in zip(flagged["patient_id"], flagged["reason"]):
        diagnostics.info(pid, STAGE, f"RECIST progression ticked but reason is {reason!r}")
