"""Synthetic CRF export generator.

Generates the nine CRF tables of a single-arm oncology trial: first-dose
records, RECIST tumor assessments with target-lesion diameters, new-lesion
and overall-response forms, discontinuation and end-of-study forms.
Verbatim texts use the spellings seen on real CRFs so that the controlled
vocabularies are exercised.
"""

import numpy as np
import pandas as pd

from pfsderive.harmonize.harmonizer import SCHEMAS
from pfsderive.ingest.base import DataSource
from pfsderive.utils.config import TrialConfig

RESPONSE_TEXT = {
    "CR": "Complete Response (CR)",
    "PR": "Partial Response (PR)",
    "SD": "Stable Disease (SD)",
    "NN": "Non-CR/Non-PD",
    "PD": "Progressive Disease (PD)",
}

PROGRESSION_REASONS = ["Progressive disease", "Disease progression", "Radiological progression"]
OTHER_REASONS = ["Unacceptable toxicity", "Patient's decision", "Worsening of general condition", "Other"]


class SyntheticSource(DataSource):
    """Config-driven synthetic CRF export generator."""

    def __init__(self, config: TrialConfig):
        self.config = config
        self.rng = np.random.default_rng(config.seed)
        self.records: dict[str, list[dict]] = {name: [] for name in SCHEMAS}

    def load(self) -> dict[str, pd.DataFrame]:
        self.rng = np.random.default_rng(self.config.seed)
        self.records = {name: [] for name in SCHEMAS}

        for pid, dosed in self._patients():
            if not dosed:
                self.records["intake"].append({"patient_id": pid, "first_dose_date": None})
                continue
            index_date = self._generate_intake(pid)
            last_date, progression_date = self._generate_assessments(pid, index_date)
            self._generate_disposition(pid, last_date, progression_date)

        return {
            name: pd.DataFrame(rows, columns=list(SCHEMAS[name].columns))
            for name, rows in self.records.items()
        }

    def _patients(self):
        """Patient ids as <site>-<number>; the last patient is never dosed."""
        cfg = self.config
        sites = cfg.get("synthetic", "sites")
        n = cfg.n_subjects
        for i in range(n):
            yield f"{sites[i % len(sites)]}-{i + 1:03d}", i < n - 1

    def _generate_intake(self, pid: str) -> pd.Timestamp:
        cfg = self.config
        start = pd.Timestamp(cfg.get("synthetic", "start_date"))
        window = cfg.get("synthetic", "enrollment_window_days")
        index_date = start + pd.Timedelta(days=int(self.rng.integers(0, window)))

        # One row per administration; cycles every 21 days
        n_cycles = int(self.rng.integers(1, 4))
        for cycle in range(n_cycles):
            self.records["intake"].append({
                "patient_id": pid,
                "first_dose_date": index_date + pd.Timedelta(days=21 * cycle),
            })
        return index_date

    def _generate_assessments(self, pid: str, index_date: pd.Timestamp):
        """Tumor trajectory; stops at the first progressive assessment."""
        cfg = self.config
        interval = cfg.get("synthetic", "visit_interval_days")
        max_assessments = cfg.get("synthetic", "max_assessments")
        lo, hi = cfg.get("synthetic", "diameter_range_mm")
        n_lo, n_hi = cfg.get("synthetic", "lesions_per_patient")
        growth = cfg.get("synthetic", "growth_rate")
        p_new = cfg.get("synthetic", "new_lesion_probability")

        baseline_date = index_date - pd.Timedelta(days=int(self.rng.integers(1, 15)))
        measurable = self.rng.random() < cfg.get("synthetic", "measurable_fraction")

        if measurable:
            diameters = self.rng.uniform(lo, hi, size=int(self.rng.integers(n_lo, n_hi + 1))).round(1)
            for d in diameters:
                self.records["baseline_measurable"].append({
                    "patient_id": pid, "evaluation_date": baseline_date, "diameter": float(d),
                })
            baseline = nadir = float(diameters.sum())
        else:
            diameters = np.array([])
            baseline = nadir = None
        for _ in range(int(self.rng.integers(0 if measurable else 1, 3))):
            self.records["baseline_nonmeasurable"].append({
                "patient_id": pid, "evaluation_date": baseline_date,
            })

        rate = self.rng.normal(growth["mean"], growth["std"])
        n_assessments = int(self.rng.integers(2, max_assessments + 1))
        last_date = baseline_date
        for t in range(1, n_assessments + 1):
            date = index_date + pd.Timedelta(days=interval * t + int(self.rng.integers(-3, 4)))
            new_lesion = bool(self.rng.random() < p_new)

            if measurable:
                current = np.clip(diameters * (1 + rate) ** t, 0, None).round(1)
                for d in current:
                    self.records["post_measurable"].append({
                        "patient_id": pid, "assessment_index": t,
                        "evaluation_date": date, "diameter": float(d),
                    })
                total = float(current.sum())
                response = self._recist(total, baseline, nadir, new_lesion)
                nadir = min(nadir, total)
            else:
                self.records["post_nonmeasurable"].append({
                    "patient_id": pid, "assessment_index": t,
                    "evaluation_date": date, "nontarget_present": True,
                })
                response = "PD" if new_lesion else "NN"

            self.records["new_lesions"].append({
                "patient_id": pid, "assessment_index": t,
                "evaluation_date": date, "new_lesion": "Yes" if new_lesion else "No",
            })
            self.records["overall_response"].append({
                "patient_id": pid, "assessment_index": t,
                "evaluation_date": date, "response_code": RESPONSE_TEXT[response],
            })
            last_date = date
            if response == "PD":
                return last_date, date

        return last_date, None

    @staticmethod
    def _recist(total: float, baseline: float, nadir: float, new_lesion: bool) -> str:
        if new_lesion or (nadir > 0 and total - nadir >= 5 and (total - nadir) / nadir >= 0.2):
            return "PD"
        if total == 0:
            return "CR"
        if baseline > 0 and (total - baseline) / baseline <= -0.3:
            return "PR"
        return "SD"

    def _generate_disposition(self, pid: str, last_date: pd.Timestamp, progression_date) -> None:
        cfg = self.config
        p_death = cfg.get("synthetic", "death_probability")

        if progression_date is not None:
            self.records["discontinuation"].append({
                "patient_id": pid,
                "discontinuation_date": progression_date + pd.Timedelta(days=int(self.rng.integers(0, 22))),
                "reason": str(self.rng.choice(PROGRESSION_REASONS)),
                "other_reason": None,
                "radiological_progression_date": progression_date,
                "biological_progression_date": None,
                "clinical_progression_date": None,
                "recist_progression": bool(self.rng.random() >= cfg.get("synthetic", "unticked_recist_probability")),
            })
            return

        if self.rng.random() < cfg.get("synthetic", "other_discontinuation_probability"):
            reason = str(self.rng.choice(OTHER_REASONS))
            discontinuation_date = last_date + pd.Timedelta(days=int(self.rng.integers(1, 30)))
            self.records["discontinuation"].append({
                "patient_id": pid,
                "discontinuation_date": discontinuation_date,
                "reason": reason,
                "other_reason": "Surgical resection" if reason == "Other" else None,
                "radiological_progression_date": None,
                "biological_progression_date": None,
                "clinical_progression_date": None,
                "recist_progression": False,
            })
            if self.rng.random() < p_death:
                self._end_of_study_death(
                    pid, discontinuation_date, str(self.rng.choice(["Disease progression", "Cardiac arrest"]))
                )
            return

        # Still active at data cut-off
        if self.rng.random() < p_death:
            self._end_of_study_death(pid, last_date, "Disease progression")

    def _end_of_study_death(self, pid: str, after: pd.Timestamp, cause: str) -> None:
        self.records["end_of_study"].append({
            "patient_id": pid,
            "end_of_study_date": after + pd.Timedelta(days=int(self.rng.integers(10, 120))),
            "followup_continued": "No",
            "followup_reason": "Death",
            "death_cause": cause,
        })
