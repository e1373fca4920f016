"""Abstract base class for CRF data sources."""

from abc import ABC, abstractmethod

import pandas as pd

TABLES = (
    "intake",
    "discontinuation",
    "end_of_study",
    "baseline_measurable",
    "baseline_nonmeasurable",
    "post_measurable",
    "post_nonmeasurable",
    "new_lesions",
    "overall_response",
)


class DataSource(ABC):
    """Interface for loading CRF exports.

    All data sources (Excel CRF exports, synthetic) implement this interface,
    returning data in a unified dict format that the Harmonizer can process.
    """

    @abstractmethod
    def load(self) -> dict[str, pd.DataFrame]:
        """Load and return the CRF tables.

        Returns:
            Dict keyed by the names in ``TABLES``:
                "intake": Treatment administrations (first-dose dates)
                "discontinuation": At most one row per patient
                "end_of_study": At most one row per patient
                "baseline_*": Screening lesions (assessment index 0)
                "post_*", "new_lesions", "overall_response": One or more
                    rows per patient and post-baseline assessment index
            A table the source does not have is returned empty.
        """
        ...
