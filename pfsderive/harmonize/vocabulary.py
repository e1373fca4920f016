"""Controlled vocabularies for discontinuation reasons and response codes.

Verbatim CRF text is matched after case folding and whitespace collapsing.
Anything not listed maps to the explicit ``unmapped`` / ``unknown`` variant;
nothing is guessed. Bump ``VOCABULARY_VERSION`` whenever a table changes.
"""

import re
from dataclasses import dataclass, field

import pandas as pd

from pfsderive.utils.config import TrialConfig

VOCABULARY_VERSION = "2024.1"

DISEASE_PROGRESSION = "Disease progression"
ACTIVE = "Active"
TOXICITY = "Unacceptable toxicity/adverse event"
PATIENT_DECISION = "Patient's decision"
WORSENING = "Worsening"
SURGERY = "Patient submitted to surgery"
UNMAPPED = "unmapped"

REASON_CATEGORIES = (
    DISEASE_PROGRESSION,
    ACTIVE,
    TOXICITY,
    PATIENT_DECISION,
    WORSENING,
    SURGERY,
)

OTHER_CODE = "other"

DISCONTINUATION_REASONS = {
    "disease progression": DISEASE_PROGRESSION,
    "progressive disease": DISEASE_PROGRESSION,
    "progressive disease (pd)": DISEASE_PROGRESSION,
    "progression": DISEASE_PROGRESSION,
    "progression of disease": DISEASE_PROGRESSION,
    "radiological progression": DISEASE_PROGRESSION,
    "clinical progression": DISEASE_PROGRESSION,
    "pd": DISEASE_PROGRESSION,
    "active": ACTIVE,
    "ongoing": ACTIVE,
    "on treatment": ACTIVE,
    "unacceptable toxicity": TOXICITY,
    "unacceptable toxicity/adverse event": TOXICITY,
    "adverse event": TOXICITY,
    "adverse event/unacceptable toxicity": TOXICITY,
    "toxicity": TOXICITY,
    "patient's decision": PATIENT_DECISION,
    "patient decision": PATIENT_DECISION,
    "patient refusal": PATIENT_DECISION,
    "withdrawal of consent": PATIENT_DECISION,
    "consent withdrawn": PATIENT_DECISION,
    "worsening": WORSENING,
    "clinical worsening": WORSENING,
    "worsening of general condition": WORSENING,
    "deterioration of general condition": WORSENING,
    "patient submitted to surgery": SURGERY,
    "surgery": SURGERY,
    "surgical resection": SURGERY,
}

CR = "CR"
PR = "PR"
SD = "SD"
NON_CR_NON_PD = "Non-CR/Non-PD"
PD = "PD"
UNKNOWN = "unknown"

RESPONSE_CATEGORIES = (CR, PR, SD, NON_CR_NON_PD, PD)

RESPONSE_CODES = {
    "complete response": CR,
    "complete response (cr)": CR,
    "cr": CR,
    "partial response": PR,
    "partial response (pr)": PR,
    "pr": PR,
    "stable disease": SD,
    "stable disease (sd)": SD,
    "sd": SD,
    "non-cr/non-pd": NON_CR_NON_PD,
    "non cr/non pd": NON_CR_NON_PD,
    "non-complete response/non-progressive disease": NON_CR_NON_PD,
    "progressive disease": PD,
    "progressive disease (pd)": PD,
    "pd": PD,
    "not evaluable": UNKNOWN,
    "not evaluable (ne)": UNKNOWN,
    "ne": UNKNOWN,
}

_WHITESPACE = re.compile(r"\s+")
_SLASH = re.compile(r"\s*/\s*")


def normalize_key(value) -> str | None:
    """Case-fold and collapse whitespace; None for missing or blank values."""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    key = _WHITESPACE.sub(" ", str(value)).strip().casefold()
    key = _SLASH.sub("/", key)
    return key or None


def _config_key(verbatim) -> str:
    key = normalize_key(verbatim)
    if key is None:
        raise ValueError(f"Blank verbatim text in vocabulary config: {verbatim!r}")
    return key


@dataclass
class Vocabulary:
    """Lookup tables in effect for one run (built-ins plus trial additions)."""

    reasons: dict[str, str] = field(default_factory=lambda: dict(DISCONTINUATION_REASONS))
    responses: dict[str, str] = field(default_factory=lambda: dict(RESPONSE_CODES))
    version: str = VOCABULARY_VERSION

    @classmethod
    def from_config(cls, config: TrialConfig) -> "Vocabulary":
        vocab = cls()
        extra_reasons = config.get("vocabulary", "discontinuation_reasons", default={}) or {}
        extra_responses = config.get("vocabulary", "response_codes", default={}) or {}

        for verbatim, category in extra_reasons.items():
            if category not in REASON_CATEGORIES:
                raise ValueError(
                    f"Discontinuation reason {verbatim!r} maps to unknown category {category!r}"
                )
            vocab.reasons[_config_key(verbatim)] = category
        for verbatim, category in extra_responses.items():
            if category not in RESPONSE_CATEGORIES + (UNKNOWN,):
                raise ValueError(
                    f"Response code {verbatim!r} maps to unknown category {category!r}"
                )
            vocab.responses[_config_key(verbatim)] = category

        if extra_reasons or extra_responses:
            vocab.version = f"{VOCABULARY_VERSION}+{config.trial_id}"
        return vocab

    def reason(self, value) -> str | None:
        """Canonical reason category, ``unmapped``, or None for a blank value."""
        key = normalize_key(value)
        if key is None:
            return None
        return self.reasons.get(key, UNMAPPED)

    def response(self, value) -> str | None:
        """Canonical response category, ``unknown``, or None for a blank value."""
        key = normalize_key(value)
        if key is None:
            return None
        return self.responses.get(key, UNKNOWN)

    def is_known_response(self, value) -> bool:
        key = normalize_key(value)
        return key is not None and key in self.responses


DEFAULT_VOCABULARY = Vocabulary()


def normalize_reason(raw, other_reason=None, vocabulary: Vocabulary = DEFAULT_VOCABULARY) -> str | None:
    """Map a raw discontinuation reason to its canonical category.

    A raw code of ``Other`` is replaced by the free-text ``other_reason``
    before lookup.
    """
    if normalize_key(raw) == OTHER_CODE:
        raw = other_reason
    return vocabulary.reason(raw)


def normalize_response(raw, vocabulary: Vocabulary = DEFAULT_VOCABULARY) -> str | None:
    return vocabulary.response(raw)


def is_disease_progression(raw, vocabulary: Vocabulary = DEFAULT_VOCABULARY) -> bool:
    """True when free text (e.g. a cause of death) denotes disease progression."""
    return vocabulary.reason(raw) == DISEASE_PROGRESSION
