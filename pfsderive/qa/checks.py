"""Derivation validation checks.

Each check is a class with a run() method that validates one property of
the derived PFS and response tables. These checks catch issues that would
invalidate the survival analysis or the response review.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

from pfsderive.errors import DataGapError, DateInconsistencyWarning, UnmappedCategoryWarning
from pfsderive.harmonize.vocabulary import UNKNOWN, UNMAPPED
from pfsderive.pipeline import PipelineResult
from pfsderive.utils.config import TrialConfig


@dataclass
class QAResult:
    name: str
    passed: bool
    message: str
    details: str = ""


def _findings(result: PipelineResult, category: str, stage: str | None = None) -> pd.DataFrame:
    diag = result.diagnostics
    mask = diag["category"] == category
    if stage is not None:
        mask &= diag["stage"] == stage
    return diag[mask]


class ExpectedCohortSize:
    """The analysis cohort must have the configured size."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        expected = config.expected_cohort_size
        n = len(result.cohort)
        if expected is None:
            return QAResult("Expected Cohort Size", True,
                            f"{n} patients (no expected size configured)")
        return QAResult(
            name="Expected Cohort Size",
            passed=n == expected,
            message=f"{n} patients, expected {expected}",
        )


class OnePFSRecordPerPatient:
    """Every cohort patient has exactly one PFS record, unless reported as a data gap."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        gaps = set(_findings(result, DataGapError.__name__)["patient_id"])
        expected = set(result.cohort["patient_id"]) - gaps
        ids = result.pfs["patient_id"]
        missing = sorted(expected - set(ids))
        duplicated = sorted(ids[ids.duplicated()].unique())
        passed = not missing and not duplicated
        return QAResult(
            name="One PFS Record Per Patient",
            passed=passed,
            message=f"{len(ids)} records for {len(expected)} timeable patients"
                    + ("" if passed else f" ({len(missing)} missing, {len(duplicated)} duplicated)"),
            details="\n".join(
                [f"missing: {p}" for p in missing] + [f"duplicated: {p}" for p in duplicated]
            ),
        )


class NoNegativePFSTimes:
    """PFS times must be non-negative and events binary."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        negative = int((result.pfs["pfs_time"] < 0).sum())
        non_binary = int((~result.pfs["pfs_event"].isin([0, 1])).sum())
        return QAResult(
            name="No Negative PFS Times",
            passed=negative == 0 and non_binary == 0,
            message=f"{negative} negative times, {non_binary} non-binary events"
                    if negative or non_binary else "All PFS times non-negative, events binary",
        )


class NoCensoringGaps:
    """Every patient could be placed on the time axis."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        gaps = _findings(result, DataGapError.__name__)
        return QAResult(
            name="No Censoring Gaps",
            passed=gaps.empty,
            message=f"{gaps['patient_id'].nunique()} patients excluded from PFS" if not gaps.empty
                    else "All cohort patients have a resolved date",
            details="\n".join(f"{p}: {m}" for p, m in zip(gaps["patient_id"], gaps["message"])),
        )


class MappedDiscontinuationReasons:
    """Discontinuation reasons must be in the controlled vocabulary."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        unmapped = result.events[result.events["reason"] == UNMAPPED]
        raw = sorted({str(r) for r in unmapped["reason_raw"]})
        return QAResult(
            name="Mapped Discontinuation Reasons",
            passed=unmapped.empty,
            message=f"{len(unmapped)} unmapped reasons" if not unmapped.empty
                    else f"All reasons mapped (vocabulary {result.vocabulary_version})",
            details="\n".join(raw),
        )


class MappedResponseCodes:
    """Overall response codes must be in the controlled vocabulary."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        findings = _findings(result, UnmappedCategoryWarning.__name__, stage="responses")
        codes = sorted(set(findings["value"]))
        n_unknown = int((result.responses["response"] == UNKNOWN).sum())
        return QAResult(
            name="Mapped Response Codes",
            passed=findings.empty,
            message=f"{len(findings)} unmapped response codes" if not findings.empty
                    else f"All response codes mapped ({n_unknown} not evaluable)",
            details="\n".join(codes),
        )


class ProgressionDateConsistency:
    """Discontinuation should follow progression within the accepted window."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        lo, hi = config.day_difference_range
        findings = _findings(result, DateInconsistencyWarning.__name__, stage="event_dates")
        n_checked = int(result.events["qc_day_difference"].notna().sum())
        return QAResult(
            name="Progression Date Consistency",
            passed=findings.empty,
            message=f"{len(findings)} of {n_checked} confirmed progressions outside {lo}..{hi} days"
                    if not findings.empty
                    else f"{n_checked} confirmed progressions within {lo}..{hi} days",
            details="\n".join(f"{p}: {v} days" for p, v in zip(findings["patient_id"], findings["value"])),
        )


class MonotonicAssessmentDates:
    """Evaluation dates should not decrease along the assessment index."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        findings = _findings(result, DateInconsistencyWarning.__name__, stage="lesions")
        return QAResult(
            name="Monotonic Assessment Dates",
            passed=findings.empty,
            message=f"{findings['patient_id'].nunique()} patients with inconsistent assessment dates"
                    if not findings.empty else "All assessment dates consistent",
            details="\n".join(f"{p}: {m}" for p, m in zip(findings["patient_id"], findings["message"])),
        )


class NadirNeverIncreases:
    """The running nadir must be non-increasing per patient."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        violations = 0
        for _, group in result.assessments.groupby("patient_id"):
            nadir = group.sort_values("assessment_index")["nadir"].dropna().values
            if len(nadir) > 1 and not np.all(np.diff(nadir) <= 0):
                violations += 1
        return QAResult(
            name="Nadir Never Increases",
            passed=violations == 0,
            message=f"{violations} patients with an increasing nadir" if violations
                    else "Nadir non-increasing for all patients",
        )


class NewLesionFlagMonotone:
    """Once a new lesion is recorded it stays recorded."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        violations = 0
        for _, group in result.responses.groupby("patient_id"):
            flags = group.sort_values("assessment_index")["new_lesion"].astype(int).values
            if len(flags) > 1 and not np.all(np.diff(flags) >= 0):
                violations += 1
        return QAResult(
            name="New Lesion Flag Monotone",
            passed=violations == 0,
            message=f"{violations} patients with a disappearing new lesion" if violations
                    else "New-lesion flags monotone for all patients",
        )


class ReportedVersusDerivedProgression:
    """Reported PD compared with lesion-based progression (informational)."""

    def run(self, result: PipelineResult, config: TrialConfig) -> QAResult:
        responses = result.responses
        reported = responses["response"] == "PD"
        derived = responses["lesion_progression"]
        discordant = responses[reported != derived]
        return QAResult(
            name="Reported vs Derived Progression",
            passed=True,
            message=f"{len(discordant)} of {len(responses)} assessments disagree",
            details="Check is informational; discordances need investigator review\n"
                    + "\n".join(
                        f"{p} #{i}: reported {r}, lesion-based PD {d}"
                        for p, i, r, d in discordant[
                            ["patient_id", "assessment_index", "response", "lesion_progression"]
                        ].itertuples(index=False)
                    ),
        )


ALL_CHECKS = [
    ExpectedCohortSize(),
    OnePFSRecordPerPatient(),
    NoNegativePFSTimes(),
    NoCensoringGaps(),
    MappedDiscontinuationReasons(),
    MappedResponseCodes(),
    ProgressionDateConsistency(),
    MonotonicAssessmentDates(),
    NadirNeverIncreases(),
    NewLesionFlagMonotone(),
    ReportedVersusDerivedProgression(),
]


def run_all_checks(result: PipelineResult, config: TrialConfig) -> list[QAResult]:
    return [check.run(result, config) for check in ALL_CHECKS]
