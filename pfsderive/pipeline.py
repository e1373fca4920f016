"""End-to-end derivation: cohort, PFS records and response records.

Each stage reads only the outputs of earlier stages and returns new tables;
the run is a deterministic function of the harmonized CRF dataset.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from pfsderive.cohort.filter import derive_cohort, restrict_to_cohort
from pfsderive.endpoints.censoring import resolve_censoring
from pfsderive.endpoints.events import resolve_event_dates
from pfsderive.endpoints.survival import derive_pfs
from pfsderive.harmonize.harmonizer import CRFDataset
from pfsderive.harmonize.vocabulary import Vocabulary
from pfsderive.qa.diagnostics import Diagnostics
from pfsderive.response.classifier import classify_responses
from pfsderive.response.lesions import aggregate_lesions, assessment_dates, build_assessment_frame
from pfsderive.utils.config import TrialConfig

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"


@dataclass(frozen=True)
class PipelineResult:
    """Stage outputs of one run."""

    cohort: pd.DataFrame
    events: pd.DataFrame
    pfs: pd.DataFrame
    assessments: pd.DataFrame
    responses: pd.DataFrame
    diagnostics: pd.DataFrame
    vocabulary_version: str

    def to_csv(self, path: Path) -> dict[str, Path]:
        """Write the output tables; returns the written paths by table name."""
        path.mkdir(parents=True, exist_ok=True)
        outputs = {
            "pfs_records": self.pfs,
            "response_records": self.responses,
            "event_dates": self.events,
            "diagnostics": self.diagnostics,
        }
        written = {}
        for name, df in outputs.items():
            out = path / f"{name}.csv"
            df.to_csv(out, index=False, date_format=DATE_FORMAT)
            written[name] = out
        return written


def _restrict(dataset: CRFDataset, cohort: pd.DataFrame) -> CRFDataset:
    return CRFDataset(**{
        name: restrict_to_cohort(df, cohort) for name, df in dataset.tables().items()
    })


def run_pipeline(dataset: CRFDataset, config: TrialConfig) -> PipelineResult:
    """Run every derivation stage on a harmonized dataset.

    Raises CohortIntegrityError (from the cohort filter) when the analysis
    population does not have the configured size. Per-patient problems are
    collected in ``PipelineResult.diagnostics`` instead.
    """
    diagnostics = Diagnostics()
    vocabulary = Vocabulary.from_config(config)

    cohort = derive_cohort(dataset.intake, config)
    data = _restrict(dataset, cohort)

    # PFS
    events = resolve_event_dates(
        cohort, data.discontinuation, data.end_of_study, config, diagnostics, vocabulary
    )
    censored = resolve_censoring(events, assessment_dates(data), diagnostics)
    pfs = derive_pfs(censored, config, diagnostics, vocabulary)

    # Tumor response
    frame = build_assessment_frame(data, diagnostics)
    assessments = aggregate_lesions(frame, diagnostics)
    responses = classify_responses(assessments, cohort, diagnostics, vocabulary)

    logger.info(
        "Pipeline finished: %d PFS records, %d response records, %d findings",
        len(pfs), len(responses), len(diagnostics),
    )
    return PipelineResult(
        cohort=cohort,
        events=censored,
        pfs=pfs,
        assessments=assessments,
        responses=responses,
        diagnostics=diagnostics.to_frame(),
        vocabulary_version=vocabulary.version,
    )
