"""Command-line interface.

@QK
"""

import csv
import json

from pestrata.cli import _summarize_row, build_parser, main


def test_parser_defaults():
    args = build_parser().parse_args(["scan", "a.exe"])
    assert args.format == "text"
    assert args.jobs == 1
    assert not args.no_signatures


def test_scan_single_json(pe_file, tmp_path):
    path = pe_file()
    out = tmp_path / "out" / "report.json"
    assert main(["scan", path, "-f", "json", "--no-signatures", "-o", str(out)]) == 0
    rep = json.loads(out.read_text(encoding="utf-8"))
    assert rep["analysis"]["sections"]["count"] == 2
    assert rep["analysis"]["anomalies"] == []


def test_scan_single_text_to_stdout(pe_file, capsys):
    assert main(["scan", pe_file(), "--no-signatures"]) == 0
    assert "Anomalies" in capsys.readouterr().out


def test_scan_non_pe_returns_error_status(tmp_path, capsys):
    junk = tmp_path / "junk.exe"
    junk.write_bytes(b"\x00" * 256)
    assert main(["scan", str(junk), "-f", "json", "--no-signatures"]) == 1
    rep = json.loads(capsys.readouterr().out)
    assert rep["error_type"] == "not_pe"


def test_scan_missing_target(tmp_path):
    assert main(["scan", str(tmp_path / "nothing.exe"), "--no-signatures"]) == 2


def test_batch_scan_writes_csv_and_json(pe_file, tmp_path):
    pe_file("a.exe")
    pe_file("b.exe", timestamp=0)
    (tmp_path / "c.exe").write_bytes(b"not a pe" * 16)
    out = tmp_path / "reports"
    rc = main(["scan", str(tmp_path), "-f", "json", "--no-signatures", "--csv", "-o", str(out)])
    assert rc == 0

    batch = json.loads((out / "batch.json").read_text(encoding="utf-8"))
    assert batch["batch"]["count"] == 3
    assert (out / "a.exe.json").exists()

    with (out / "summary.csv").open(newline="", encoding="utf-8") as f:
        rows = {r["path"].rsplit("/", 1)[-1].rsplit("\\", 1)[-1]: r for r in csv.DictReader(f)}
    assert rows["a.exe"]["anomalies"] == "0"
    assert int(rows["b.exe"]["anomalies"]) >= 1
    assert rows["c.exe"]["error"]


def test_batch_html_needs_output_dir(pe_file, tmp_path):
    pe_file("a.exe")
    assert main(["scan", str(tmp_path), "-f", "html", "--no-signatures"]) == 2


def test_batch_html(pe_file, tmp_path):
    pe_file("a.exe")
    pe_file("b.exe")
    out = tmp_path / "html"
    assert main(["scan", str(tmp_path), "-f", "html", "--no-signatures", "-o", str(out)]) == 0
    assert (out / "index.html").exists()
    assert (out / "a.exe.html").exists()


def test_summarize_row_error_report():
    row = _summarize_row({"target": {"path": "x"}, "error": "boom"})
    assert row["path"] == "x"
    assert row["error"] == "boom"
    assert row["anomalies"] == ""


def test_rules_list(capsys):
    assert main(["rules", "list"]) == 0
    out = capsys.readouterr().out
    assert "zip_archive" in out
    assert "entry_point" in out


def test_rules_list_missing_dir(tmp_path):
    assert main(["rules", "list", "--signatures-dir", str(tmp_path / "none")]) == 2
