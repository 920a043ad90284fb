"""Markdown run report, used as the body of the run summary e-mail."""
from __future__ import annotations

import html
import re

from autoapply.models import ApplicationStatus, RunSummary

_BADGES = {
    ApplicationStatus.SUBMITTED: "✅",
    ApplicationStatus.FAILED: "❌",
    ApplicationStatus.SKIPPED: "⏭",
}


def build_run_report(summary: RunSummary) -> str:
    lines: list[str] = [f"# Job Applications — run {summary.run_id[:8]}", ""]
    lines.append(
        f"**{summary.submitted}** sent | **{summary.failed}** failed | **{summary.skipped}** skipped"
        f" | {summary.candidates_found} candidates found"
    )
    lines.append(f"Quota resets at {summary.next_reset_at.strftime('%Y-%m-%d %H:%M %Z')}.")
    if summary.cancelled:
        lines.append("_The run was cancelled before all candidates were processed._")
    lines.append("")

    if summary.records:
        lines.append("| # | Role | Company | Score | Status |")
        lines.append("|--:|------|---------|------:|--------|")
        for i, r in enumerate(summary.records, 1):
            title = r.job_title[:40] + ("…" if len(r.job_title) > 40 else "")
            company = r.company[:22] + ("…" if len(r.company) > 22 else "")
            link = f"[{title}]({r.job_url})" if r.job_url else title
            lines.append(
                f"| {i} | {link} | {company} | {r.match_score:.0f} | {_BADGES.get(r.status, '')} {r.status.value} |"
            )
        lines.append("")

    failed = [r for r in summary.records if r.status is ApplicationStatus.FAILED and r.error]
    if failed:
        lines.append("## Failures")
        lines.append("")
        for r in failed:
            lines.append(f"- **{r.job_title}** @ {r.company}: {r.error[:120]}")
        lines.append("")
    return "\n".join(lines)


def _inline(text: str) -> str:
    text = html.escape(text, quote=False)
    text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"_(.+?)_", r"<em>\1</em>", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2">\1</a>', text)
    return text


def md_to_html(md: str) -> str:
    """Just enough markdown for the report: headings, tables, bullets."""
    parts: list[str] = []
    in_table = False
    for line in md.split("\n"):
        s = line.strip()
        if s.startswith("|") and s.endswith("|"):
            cells = [c.strip() for c in s.split("|")[1:-1]]
            if all(set(c) <= {"-", " ", ":"} for c in cells):
                continue
            tag = "td" if in_table else "th"
            if not in_table:
                parts.append('<table style="border-collapse:collapse;font-size:13px">')
                in_table = True
            parts.append("<tr>" + "".join(
                f'<{tag} style="border:1px solid #ddd;padding:4px 8px">{_inline(c)}</{tag}>' for c in cells
            ) + "</tr>")
            continue
        if in_table:
            parts.append("</table>")
            in_table = False
        if not s:
            continue
        if s.startswith("## "):
            parts.append(f"<h2>{_inline(s[3:])}</h2>")
        elif s.startswith("# "):
            parts.append(f"<h1>{_inline(s[2:])}</h1>")
        elif s.startswith("- "):
            parts.append(f"<div>• {_inline(s[2:])}</div>")
        else:
            parts.append(f"<p>{_inline(s)}</p>")
    if in_table:
        parts.append("</table>")
    return "\n".join(parts)
