"""Error and warning taxonomy for the derivation pipeline.

Structural problems (wrong cohort, conflicting one-to-one rows) raise and
abort the run. Per-patient data-quality problems are recorded as diagnostics
and the run continues.
"""


class CohortIntegrityError(ValueError):
    """Derived analysis cohort does not match the expected size."""


class CardinalityError(ValueError):
    """A table expected to be keyed one-to-one holds conflicting rows."""


class DataGapError(Exception):
    """A patient cannot be placed on the time axis."""

    def __init__(self, patient_id: str, message: str):
        super().__init__(f"{patient_id}: {message}")
        self.patient_id = patient_id
        self.message = message


class UnmappedCategoryWarning(UserWarning):
    """A reason or response code is outside the controlled vocabulary."""


class DateInconsistencyWarning(UserWarning):
    """Two dates for the same patient disagree beyond the accepted range."""
