"""Shared fixtures for pfsderive tests."""

import pandas as pd
import pytest
from pathlib import Path

from pfsderive.utils.config import TrialConfig
from pfsderive.ingest.synthetic import SyntheticSource
from pfsderive.harmonize.harmonizer import Harmonizer
from pfsderive.pipeline import run_pipeline


BASE_DIR = Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def pfs_config():
    return TrialConfig.load(BASE_DIR / "configs" / "trial_pfs.yaml")


@pytest.fixture(scope="session")
def raw_data(pfs_config):
    source = SyntheticSource(pfs_config)
    return source.load()


@pytest.fixture(scope="session")
def harmonized(pfs_config, raw_data):
    harmonizer = Harmonizer(pfs_config)
    return harmonizer.harmonize(raw_data)


@pytest.fixture(scope="session")
def result(harmonized, pfs_config):
    return run_pipeline(harmonized, pfs_config)


@pytest.fixture
def small_config():
    return TrialConfig.from_dict({
        "trial": {"id": "T-01", "name": "Unit test trial", "site_prefix_length": 3},
    })


@pytest.fixture
def make_dataset(small_config):
    """Harmonize hand-written tables given as lists of row dicts."""

    def _make(config=None, **tables):
        raw = {name: pd.DataFrame(rows) for name, rows in tables.items()}
        return Harmonizer(config or small_config).harmonize(raw)

    return _make
