"""Report formatting and rendering.

PEStrata produces a single *canonical* report object (a Python ``dict``) in
the analysis engine. This module converts that dict into human-facing formats:

- **Text**: terminal-friendly summary with the section table and anomalies.
- **HTML**: a single-file, offline report (no external assets).
- **Batch HTML index**: navigable overview for directory scans.

HTML rendering uses Jinja2 templates shipped with the package.

@QK
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

from jinja2 import Environment, FileSystemLoader, select_autoescape


def _hex(value: Any) -> str:
    return f"0x{value:x}" if isinstance(value, int) else str(value)


def _environment(template_dir: str) -> Environment:
    env = Environment(
        loader=FileSystemLoader(template_dir),
        autoescape=select_autoescape(["html", "xml", "html.j2"]),
    )
    env.filters["hex"] = _hex
    return env


def format_sections(sections: Dict[str, Any]) -> List[str]:
    """Section table rows as fixed-width text lines."""

    lines: List[str] = []
    rows = sections.get("details") or []
    if not rows:
        lines.append("None")
        return lines

    lines.append(f"{'#':>3} {'name':<10} {'VA':>10} {'VSize':>10} {'RawPtr':>10} {'RawSize':>10} flags")
    for s in rows:
        lines.append(
            f"{s.get('number', ''):>3} {str(s.get('name', ''))[:10]:<10} "
            f"{_hex(s.get('virtual_address')):>10} {_hex(s.get('virtual_size')):>10} "
            f"{_hex(s.get('pointer_to_raw_data')):>10} {_hex(s.get('size_of_raw_data')):>10} "
            f"{','.join(s.get('flags') or [])}"
        )
    if sections.get("truncated"):
        lines.append(f"(section table truncated: {sections.get('declared_count')} declared)")
    return lines


def format_text(report: Dict[str, Any]) -> str:
    """Format a report dict as a compact text summary.

    This is a *summary* (not a full dump). For full fidelity, use JSON output.
    """

    lines: list[str] = []

    tool = report.get("tool", {})
    target = report.get("target", {})
    pe = report.get("pe", {})
    analysis = report.get("analysis", {})

    # Header
    lines.append(f"{tool.get('name','PEStrata')} v{tool.get('version','')}")
    lines.append("")

    # Target section
    lines.append("Target")
    lines.append("------")
    lines.append(f"Path:  {target.get('path','')}")
    if "error" in report:
        lines.append(f"Error: {report.get('error')}")
        return "\n".join(lines)
    lines.append(f"Type:  {target.get('type','')}")
    lines.append(f"Size:  {target.get('size','')} bytes")
    h = target.get("hashes", {})
    lines.append(f"MD5:   {h.get('md5','')}")
    lines.append(f"SHA1:  {h.get('sha1','')}")
    lines.append(f"SHA256:{h.get('sha256','')}")
    lines.append("")

    # PE summary
    lines.append("PE Summary")
    lines.append("----------")
    for k in [
        "imphash",
        "timestamp_utc",
        "machine",
        "magic",
        "subsystem",
        "imagebase",
        "entrypoint_rva",
        "is_dll",
    ]:
        if k in pe:
            lines.append(f"{k}: {pe.get(k)}")
    lines.append("")

    lines.append("Sections")
    lines.append("--------")
    lines.extend(format_sections(analysis.get("sections") or {}))
    lines.append("")

    overlay = analysis.get("overlay") or {}
    if overlay.get("exists"):
        lines.append(f"Overlay: {_hex(overlay.get('offset'))} ({overlay.get('size')} bytes)")
        lines.append("")

    score = report.get("score", {})
    if score:
        lines.append("Structural Score")
        lines.append("----------------")
        lines.append(f"Score: {score.get('value')} / 100 ({str(score.get('level','')).upper()})")

        for c in (score.get("breakdown") or [])[:8]:
            lines.append(f"  +{c.get('points')}: {c.get('id')} - {c.get('message')}")
        lines.append("")

    lines.append("RE Hints")
    lines.append("--------")
    hints = analysis.get("rehints") or []
    if not hints:
        lines.append("None")
    for hint in hints:
        lines.append(f"{hint.get('type')}: {hint.get('description')}")
        for r in hint.get("reasons") or []:
            lines.append(f"  - {r}")
    lines.append("")

    lines.append("Anomalies")
    lines.append("---------")
    anomalies = analysis.get("anomalies") or []
    if not anomalies:
        lines.append("None")
    for a in anomalies:
        lines.append(f"[{str(a.get('type','')).lower()}] {a.get('description')}")
    lines.append("")

    sigs = analysis.get("signatures") or []
    if sigs:
        lines.append("Signatures")
        lines.append("----------")
        for m in sigs[:50]:
            lines.append(f"{m.get('location')}: {m.get('name')} at {_hex(m.get('offset'))}")
        if len(sigs) > 50:
            lines.append(f"... ({len(sigs)-50} more)")
        lines.append("")

    for key in ("signatures_error", "signals_error"):
        if analysis.get(key):
            lines.append(f"{key}: {analysis[key]}")

    return "\n".join(lines)


def render_html(report: Dict[str, Any], *, template_dir: str, template_name: str = "report.html.j2") -> str:
    """Render a single-report HTML page.

    The output is a *single, self-contained HTML file* suitable for sharing.
    ``report_json`` is embedded so the page can offer a "Download JSON"
    button without a server.
    """

    tpl = _environment(template_dir).get_template(template_name)
    report_json = json.dumps(report, ensure_ascii=False, sort_keys=True, indent=2)
    return tpl.render(report=report, report_json=report_json)


def render_html_index(
    batch: Dict[str, Any],
    *,
    template_dir: str,
    template_name: str = "index.html.j2",
) -> str:
    """Render the batch index HTML.

    ``batch`` is a dict containing:
    - tool: {name, version}
    - batch: {count, seconds}
    - results: list[report]

    Each report is expected to have an ``_html_file`` key injected by the CLI.
    """

    tpl = _environment(template_dir).get_template(template_name)
    return tpl.render(batch=batch)
