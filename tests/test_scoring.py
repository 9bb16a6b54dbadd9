"""Structural score.

@QK
"""

from pestrata.scoring import attach_score, compute_score, score_level


def test_score_level_buckets():
    assert score_level(0) == "low"
    assert score_level(19) == "low"
    assert score_level(20) == "medium"
    assert score_level(50) == "high"
    assert score_level(75) == "critical"


def test_score_level_custom_thresholds():
    assert score_level(10, {"medium": 5, "high": 8, "critical": 50}) == "high"


def test_each_subtype_counts_once():
    report = {
        "analysis": {
            "anomalies": [
                {"type": "STRUCTURE", "subtype": "PHYSICALLY_OVERLAPPING_SEC"},
                {"type": "STRUCTURE", "subtype": "PHYSICALLY_OVERLAPPING_SEC"},
                {"type": "NON_DEFAULT", "subtype": "UNUSUAL_SEC_NAME"},
            ],
            "rehints": [{"type": "UPX_PACKER", "description": "..."}],
        }
    }

    score, breakdown = compute_score(report)
    assert score == 8 + 1 + 10
    assert [b.id for b in breakdown] == ["rehint:UPX_PACKER", "PHYSICALLY_OVERLAPPING_SEC", "UNUSUAL_SEC_NAME"]
    assert "2 occurrences" in breakdown[1].message


def test_weights_and_cap_from_rules():
    report = {"analysis": {"anomalies": [{"type": "WRONG", "subtype": f"X{i}"} for i in range(30)]}}
    score, _ = compute_score(report, {"weights": {"WRONG": 10}, "overall_cap": 90})
    assert score == 90


def test_missing_and_malformed_entries_are_ignored():
    report = {"analysis": {"anomalies": [None, "x", {"type": "STRUCTURE"}], "rehints": "nope"}}
    assert compute_score(report) == (0, [])
    assert compute_score({}) == (0, [])


def test_attach_score():
    report = {"analysis": {"anomalies": [{"type": "STRUCTURE", "subtype": "SECTIONLESS"}]}}
    attach_score(report, {"thresholds": {"medium": 5}})
    assert report["score"]["value"] == 8
    assert report["score"]["level"] == "medium"
    assert report["score"]["breakdown"][0]["id"] == "SECTIONLESS"
