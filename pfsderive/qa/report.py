"""QA report generator.

Produces a markdown report summarizing the derivation checks and the
per-patient findings that need manual review.
"""

from pathlib import Path

import pandas as pd

from pfsderive.qa.checks import QAResult


def generate_qa_report(
    results: list[QAResult],
    output_path: Path,
    diagnostics: pd.DataFrame | None = None,
) -> None:
    passed = sum(1 for r in results if r.passed)
    total = len(results)

    lines = [
        "# PFS / Response Derivation QA Report",
        "",
        f"**{passed}/{total} checks passed**",
        "",
        "| Check | Status | Message |",
        "|-------|--------|---------|",
    ]

    for r in results:
        status = "PASS" if r.passed else "FAIL"
        lines.append(f"| {r.name} | {status} | {r.message} |")

    # Detailed findings for failures
    failures = [r for r in results if not r.passed]
    if failures:
        lines.append("")
        lines.append("## Failures")
        for r in failures:
            lines.append(f"\n### {r.name}")
            lines.append(r.message)
            if r.details:
                lines.append(f"\n```\n{r.details}\n```")

    # Findings needing review, grouped by category
    if diagnostics is not None and not diagnostics.empty:
        lines.append("")
        lines.append("## Review Items")
        counts = diagnostics.groupby(["stage", "category"]).size()
        lines.append("")
        lines.append("| Stage | Category | Count |")
        lines.append("|-------|----------|-------|")
        for (stage, category), n in counts.items():
            lines.append(f"| {stage} | {category} | {n} |")
        review = diagnostics[diagnostics["category"] != "info"]
        for p, c, m in review[["patient_id", "category", "message"]].itertuples(index=False):
            lines.append(f"- `{p}` {c}: {m}")

    # Details section
    lines.append("")
    lines.append("## Details")
    for r in results:
        if r.details:
            lines.append(f"\n**{r.name}**: {r.details}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text("\n".join(lines))
