"""PEStrata command-line interface.

This file is small and dependency-light:
- Argument parsing (argparse)
- Target expansion (files vs directories, recursive scanning, patterns)
- Writing reports in text/json/html

The heavy lifting happens in :class:`pestrata.core.PEStrataAnalyzer`.

@QK
"""

from __future__ import annotations

import argparse
import concurrent.futures
import json
import logging
import sys
import time
from pathlib import Path

from .core import PEStrataAnalyzer, analyze_path, error_report
from .modules.signatures import list_rules
from .paths import DEFAULT_SIGNATURES_DIR, TEMPLATES_DIR
from .report import format_text, render_html, render_html_index
from .utils import is_dir, iter_targets

logger = logging.getLogger("pestrata")

LOG_FORMAT = "[%(levelname)-5s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level `pestrata` parser.

    The CLI is subcommand-based:
    - `pestrata scan ...`   run analysis
    - `pestrata rules ...`  signature helper utilities
    """

    p = argparse.ArgumentParser(
        prog="pestrata",
        description="PEStrata - structural anomaly analysis for Portable Executables (PE)",
    )
    p.add_argument(
        "-l",
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (stderr)",
    )
    sub = p.add_subparsers(dest="command", required=True)

    # -----------------------------
    # scan
    # -----------------------------
    scan = sub.add_parser("scan", help="Scan one or more files (or a directory) and emit a report")
    scan.add_argument("paths", nargs="+", help="File(s) or directory path(s)")
    scan.add_argument(
        "-f",
        "--format",
        choices=["text", "json", "html"],
        default="text",
        help="Output format",
    )
    scan.add_argument("-o", "--out", help="Output file (single target) or output directory (batch)")

    # Directory scanning controls
    scan.add_argument("--recursive", action="store_true", help="Recursively scan directories")
    scan.add_argument(
        "--pattern",
        action="append",
        default=[],
        help="Glob pattern(s) for directory scanning (repeatable). Defaults to common PE extensions.",
    )
    scan.add_argument("--max-files", type=int, default=None, help="Stop after scanning N files (batch)")
    scan.add_argument(
        "--follow-symlinks", action="store_true", help="Follow symlinks when scanning directories"
    )
    scan.add_argument(
        "-j", "--jobs", type=int, default=1, help="Analyze targets in N worker processes (batch)"
    )

    # Feature toggles
    scan.add_argument("--no-signatures", action="store_true", help="Disable byte-signature (YARA) scanning")

    # Data sources
    scan.add_argument(
        "--signatures-dir", default=str(DEFAULT_SIGNATURES_DIR), help="Custom signature rules directory"
    )
    scan.add_argument(
        "--config",
        default=None,
        help="Path to PEStrata config JSON (anomaly overrides, scoring weights)",
    )

    # Batch exports
    scan.add_argument("--csv", action="store_true", help="In batch mode, write a CSV summary")
    scan.add_argument(
        "--csv-out", default=None, help="CSV output path (defaults to <out>/summary.csv or ./summary.csv)"
    )

    # -----------------------------
    # rules
    # -----------------------------
    rules = sub.add_parser("rules", help="Rule utilities")
    rules_sub = rules.add_subparsers(dest="rules_cmd", required=True)
    rules_list = rules_sub.add_parser("list", help="List bundled signature rules per scan location")
    rules_list.add_argument("--signatures-dir", default=str(DEFAULT_SIGNATURES_DIR))

    return p


def _write_text(path: Path, content: str) -> None:
    """Write UTF-8 text, creating parent directories."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8", errors="ignore")


def _write_csv(path: Path, rows: list[dict]) -> None:
    """Write a CSV from list-of-dicts rows."""

    import csv

    path.parent.mkdir(parents=True, exist_ok=True)

    if not rows:
        # Still create the file so automation scripts find it.
        path.write_text("", encoding="utf-8")
        return

    fieldnames = list(rows[0].keys())
    with path.open("w", newline="", encoding="utf-8", errors="ignore") as f:
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        for r in rows:
            w.writerow(r)


def _summarize_row(rep: dict) -> dict:
    """Create a flat summary row suitable for CSV.

    Keep these fields compact and stable: batch CSVs end up in spreadsheets.
    """

    target = rep.get("target", {}) if isinstance(rep, dict) else {}
    pe = rep.get("pe", {}) if isinstance(rep, dict) else {}
    score = rep.get("score", {}) if isinstance(rep, dict) else {}
    analysis = rep.get("analysis", {}) if isinstance(rep, dict) else {}

    h = target.get("hashes", {}) if isinstance(target, dict) else {}
    overlay = analysis.get("overlay", {}) or {}

    return {
        "path": target.get("path", ""),
        "size": target.get("size", ""),
        "sha256": h.get("sha256", ""),
        "imphash": pe.get("imphash", ""),
        "timestamp_utc": pe.get("timestamp_utc", ""),
        "sections": (analysis.get("sections") or {}).get("count", ""),
        "anomalies": len(analysis.get("anomalies") or []) if analysis else "",
        "rehints": ";".join(x.get("type", "") for x in analysis.get("rehints") or []),
        "overlay_size": overlay.get("size", ""),
        "score": (score.get("value") if isinstance(score, dict) else ""),
        "level": (score.get("level") if isinstance(score, dict) else ""),
        "error": rep.get("error", ""),
    }


def _run(targets: list[str], args: argparse.Namespace) -> list[dict]:
    """Analyze every target; failures become per-target error reports."""

    include_signatures = not args.no_signatures

    if args.jobs and args.jobs > 1 and len(targets) > 1:
        # map() keeps the target order.
        with concurrent.futures.ProcessPoolExecutor(max_workers=args.jobs) as pool:
            return list(
                pool.map(
                    analyze_path,
                    targets,
                    [args.config] * len(targets),
                    [args.signatures_dir] * len(targets),
                    [include_signatures] * len(targets),
                )
            )

    engine = PEStrataAnalyzer(config_path=args.config, signatures_dir=args.signatures_dir)
    reports: list[dict] = []
    for tp in targets:
        try:
            rep = engine.analyze(tp, include_signatures=include_signatures)
        except Exception as e:
            logger.error("Analysis of %s failed: %s", tp, e)
            rep = error_report(tp, e)
        reports.append(rep)
    return reports


def cmd_scan(args: argparse.Namespace) -> int:
    """Entry point for `pestrata scan`."""

    t0 = time.time()

    # Expanded once so single vs batch output can be decided up front.
    patterns = args.pattern if args.pattern else None
    targets = list(
        iter_targets(
            args.paths,
            recursive=args.recursive,
            follow_symlinks=args.follow_symlinks,
            patterns=patterns,
            max_files=args.max_files,
        )
    )

    if not targets:
        print("No matching targets found.", file=sys.stderr)
        return 2

    # Batch when there are several targets or any CLI path was a directory.
    batch = len(targets) > 1 or any(is_dir(p) for p in args.paths)

    # HTML batch needs an output directory for per-file pages + index.
    if args.format == "html" and batch and not args.out:
        print("For HTML batch reports, please provide --out <output_dir>.", file=sys.stderr)
        return 2

    reports = _run(targets, args)
    template_dir = str(TEMPLATES_DIR)

    # -----------------------------
    # Single-target output
    # -----------------------------
    if not batch:
        rep = reports[0]
        status = 1 if "error" in rep else 0

        if args.format == "json":
            out = json.dumps(rep, sort_keys=True, indent=2)
            if args.out:
                _write_text(Path(args.out), out)
            else:
                print(out)
            return status

        if args.format == "html":
            html = render_html(rep, template_dir=template_dir)
            out_path = Path(args.out) if args.out else Path("pestrata_report.html")
            _write_text(out_path, html)
            print(str(out_path))
            return status

        out = format_text(rep)
        if args.out:
            _write_text(Path(args.out), out)
        else:
            print(out)
        return status

    # -----------------------------
    # Batch output
    # -----------------------------
    seconds = round(time.time() - t0, 4)
    batch_obj = {
        "tool": {"name": "PEStrata", "version": reports[0].get("tool", {}).get("version", "")},
        "batch": {"count": len(reports), "seconds": seconds},
        "results": reports,
    }

    if args.csv or args.csv_out:
        # Default CSV path: <out>/summary.csv if --out is a directory, else ./summary.csv
        if args.csv_out:
            csv_path = Path(args.csv_out)
        elif args.out:
            op = Path(args.out)
            csv_path = (op if op.is_dir() or not op.suffix else op.parent) / "summary.csv"
        else:
            csv_path = Path("summary.csv")

        _write_csv(csv_path, [_summarize_row(rep) for rep in reports])

    if args.format == "json":
        out = json.dumps(batch_obj, sort_keys=True, indent=2)
        if args.out:
            op = Path(args.out)

            # A .json path gets a single combined batch JSON.
            if op.suffix.lower() == ".json":
                _write_text(op, out)
            else:
                op.mkdir(parents=True, exist_ok=True)
                for rep in reports:
                    name = Path(rep.get("target", {}).get("path", "target")).name
                    _write_text(op / f"{name}.json", json.dumps(rep, sort_keys=True, indent=2))
                _write_text(op / "batch.json", out)
        else:
            print(out)
        return 0

    if args.format == "html":
        op = Path(args.out)
        op.mkdir(parents=True, exist_ok=True)

        for rep in reports:
            name = Path(rep.get("target", {}).get("path", "target")).name
            html_file = f"{name}.html"

            # The batch index links out to per-file pages through this key.
            rep["_html_file"] = html_file
            _write_text(op / html_file, render_html(rep, template_dir=template_dir))

        index_html = render_html_index(batch_obj, template_dir=template_dir)
        _write_text(op / "index.html", index_html)
        print(str(op / "index.html"))
        return 0

    # text batch
    if args.out:
        op = Path(args.out)

        if op.is_dir() or str(op).endswith(("/", "\\")):
            op.mkdir(parents=True, exist_ok=True)
            for rep in reports:
                name = Path(rep.get("target", {}).get("path", "target")).name
                _write_text(op / f"{name}.txt", format_text(rep))
            return 0

        parts: list[str] = []
        for rep in reports:
            parts.append(format_text(rep))
            parts.append("\n" + ("=" * 80) + "\n")
        _write_text(op, "\n".join(parts))
        return 0

    for i, rep in enumerate(reports):
        if i:
            print("\n" + ("=" * 80) + "\n")
        print(format_text(rep))
    return 0


def cmd_rules_list(args: argparse.Namespace) -> int:
    """List signature rules per scan location."""

    sig_dir = Path(args.signatures_dir)
    if not sig_dir.exists():
        print(f"Signatures directory not found: {sig_dir}", file=sys.stderr)
        return 2

    for r in list_rules(str(sig_dir)):
        print(f"{r['location']:<12} {r['rule']:<32} {r['name']}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point used by the console_script `pestrata`."""

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, args.log_level))

    if args.command == "scan":
        return cmd_scan(args)

    if args.command == "rules":
        if args.rules_cmd == "list":
            return cmd_rules_list(args)

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
