"""CLI orchestrator for the PFS / response derivation pipeline."""

import logging
from pathlib import Path

import click

from pfsderive.errors import CardinalityError, CohortIntegrityError
from pfsderive.utils.config import TrialConfig

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
OUTPUT_DIR = BASE_DIR / "outputs"


def _load_data(config: TrialConfig) -> dict:
    """Load data from the configured source."""
    if config.source == "synthetic":
        from pfsderive.ingest.synthetic import SyntheticSource
        source = SyntheticSource(config)
    elif config.source == "crf_export":
        from pfsderive.ingest.crf_export import CRFExportSource
        source = CRFExportSource(config)
    else:
        raise ValueError(f"Unknown source: {config.source}")
    return source.load()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log every stage at INFO level")
def cli(verbose: bool):
    """PFS event table and RECIST response derivation from CRF exports."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@click.option("--config", required=True, help="Path to trial YAML config")
def data(config: str):
    """Load CRF exports and save the harmonized dataset."""
    cfg = TrialConfig.load(config)
    click.echo(f"Loading data for trial: {cfg.trial_name}")

    raw = _load_data(cfg)

    from pfsderive.harmonize.harmonizer import Harmonizer
    try:
        harmonized = Harmonizer(cfg).harmonize(raw)
    except CardinalityError as exc:
        raise click.ClickException(str(exc))

    out = DATA_DIR / "processed" / cfg.trial_id
    harmonized.to_parquet(out)
    click.echo(f"Harmonized data saved to {out}")
    harmonized.summary()


@cli.command()
@click.option("--config", required=True, help="Path to trial YAML config")
def derive(config: str):
    """Derive PFS records and response records, then run QA checks."""
    cfg = TrialConfig.load(config)
    click.echo(f"Deriving endpoints for: {cfg.trial_name}")

    from pfsderive.harmonize.harmonizer import CRFDataset
    from pfsderive.pipeline import run_pipeline
    harmonized = CRFDataset.from_parquet(DATA_DIR / "processed" / cfg.trial_id)

    try:
        result = run_pipeline(harmonized, cfg)
    except CohortIntegrityError as exc:
        raise click.ClickException(f"Cohort integrity: {exc}")

    click.echo(f"Cohort: {len(result.cohort)} patients")
    click.echo(f"PFS derived: {len(result.pfs)} patients, {result.pfs['pfs_event'].sum():.0f} events")
    click.echo(f"Responses classified: {len(result.responses)} assessments")
    click.echo(f"Findings for review: {len(result.diagnostics)}")

    out = OUTPUT_DIR / cfg.trial_id
    for name, path in result.to_csv(out).items():
        click.echo(f"  {name}: {path}")

    from pfsderive.qa.checks import run_all_checks
    from pfsderive.qa.report import generate_qa_report
    results = run_all_checks(result, cfg)
    report_path = OUTPUT_DIR / "reports" / "qa_report.md"
    generate_qa_report(results, report_path, result.diagnostics)
    passed = sum(r.passed for r in results)
    click.echo(f"QA report saved to {report_path} ({passed}/{len(results)} checks passed)")


@cli.command()
@click.option("--config", required=True, help="Path to trial YAML config")
def check(config: str):
    """Re-run the derivation and fail when a QA check fails."""
    cfg = TrialConfig.load(config)

    from pfsderive.harmonize.harmonizer import CRFDataset
    from pfsderive.pipeline import run_pipeline
    from pfsderive.qa.checks import run_all_checks
    harmonized = CRFDataset.from_parquet(DATA_DIR / "processed" / cfg.trial_id)

    try:
        result = run_pipeline(harmonized, cfg)
    except CohortIntegrityError as exc:
        raise click.ClickException(f"Cohort integrity: {exc}")

    failed = [r for r in run_all_checks(result, cfg) if not r.passed]
    for r in failed:
        click.echo(f"FAIL {r.name}: {r.message}")
    if failed:
        raise click.ClickException(f"{len(failed)} QA checks failed")
    click.echo("All QA checks passed")


if __name__ == "__main__":
    cli()
