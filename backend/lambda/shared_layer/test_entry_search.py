"""Unit tests for entry search, keyword tokenization and one-thing cues."""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from rollmodel_shared.entry_search import parse_entry_search_request, search_entries
from rollmodel_shared.keywords import keyword_index_diff, keyword_key, token_groups, tokenize_text
from rollmodel_shared.session_review import (
    list_recent_one_thing_cues,
    normalize_one_thing_cue,
    normalize_session_review_artifact,
)


def _entry(entry_id, created_at, shared="", private="", tags=None, intensity=5, gi="gi", mentions=None):
    return {
        "entryId": entry_id,
        "athleteId": "a-1",
        "createdAt": created_at,
        "sections": {"shared": shared, "private": private},
        "sessionMetrics": {
            "durationMinutes": 60,
            "intensity": intensity,
            "rounds": 5,
            "giOrNoGi": gi,
            "tags": tags or [],
        },
        "rawTechniqueMentions": mentions or [],
    }


# ---------------------------------------------------------------------------
# search_entries
# ---------------------------------------------------------------------------


def test_query_ranks_shared_matches_above_private():
    entries = [
        _entry("e2", "2026-01-02T10:00:00.000Z", private="knee cut against the lockdown"),
        _entry("e1", "2026-01-01T10:00:00.000Z", shared="worked knee cut passing"),
        _entry("e3", "2026-01-03T10:00:00.000Z", shared="only drilled takedowns"),
    ]
    result = search_entries(entries, {"query": "knee cut"})
    assert [e["entryId"] for e in result["entries"]] == ["e1", "e2"]
    assert result["meta"]["scannedCount"] == 3
    assert result["meta"]["matchedCount"] == 2
    assert result["meta"]["queryApplied"] is True


def test_no_query_sorts_newest_first_and_limits():
    entries = [
        _entry("old", "2026-01-01T10:00:00.000Z"),
        _entry("new", "2026-01-03T10:00:00.000Z"),
        _entry("mid", "2026-01-02T10:00:00.000Z"),
    ]
    result = search_entries(entries, {"limit": "2"})
    assert [e["entryId"] for e in result["entries"]] == ["new", "mid"]
    assert result["meta"]["queryApplied"] is False


def test_date_only_upper_bound_covers_whole_day():
    entries = [_entry("late", "2026-01-05T20:00:00.000Z"), _entry("next", "2026-01-06T01:00:00.000Z")]
    result = search_entries(entries, {"dateTo": "2026-01-05"})
    assert [e["entryId"] for e in result["entries"]] == ["late"]


def test_structured_filters():
    entries = [
        _entry("gi-hard", "2026-01-01T10:00:00.000Z", intensity=9, tags=["guard"]),
        _entry("nogi-easy", "2026-01-02T10:00:00.000Z", intensity=3, gi="no-gi"),
        _entry("gi-mid", "2026-01-03T10:00:00.000Z", intensity=6),
    ]
    assert [e["entryId"] for e in search_entries(entries, {"giOrNoGi": "no-gi"})["entries"]] == ["nogi-easy"]
    assert [e["entryId"] for e in search_entries(entries, {"minIntensity": "6"})["entries"]] == ["gi-mid", "gi-hard"]
    assert [e["entryId"] for e in search_entries(entries, {"tag": "guard"})["entries"]] == ["gi-hard"]


def test_sort_by_intensity_ascending():
    entries = [
        _entry("a", "2026-01-01T10:00:00.000Z", intensity=8),
        _entry("b", "2026-01-02T10:00:00.000Z", intensity=2),
        _entry("c", "2026-01-03T10:00:00.000Z", intensity=5),
    ]
    result = search_entries(entries, {"sortBy": "intensity", "sortDirection": "asc"})
    assert [e["entryId"] for e in result["entries"]] == ["b", "c", "a"]


def test_text_filter_matches_technique_mentions():
    entries = [
        _entry("with", "2026-01-01T10:00:00.000Z", mentions=["Kimura trap"]),
        _entry("without", "2026-01-02T10:00:00.000Z"),
    ]
    result = search_entries(entries, {"technique": "kimura"})
    assert [e["entryId"] for e in result["entries"]] == ["with"]


def test_parse_search_request_drops_invalid_values():
    parsed = parse_entry_search_request(
        {"q": "  guard ", "giOrNoGi": "sometimes", "actionPackMinConfidence": "high", "sortBy": "name"}
    )
    assert parsed == {"query": "guard", "actionPackMinConfidence": "high"}
    assert parse_entry_search_request(None) == {}


# ---------------------------------------------------------------------------
# keywords
# ---------------------------------------------------------------------------


def test_tokenize_text_dedupes_and_drops_stopwords():
    assert tokenize_text("The knee-cut, and KNEE cut!") == ["knee", "cut"]


def test_private_only_tokens_are_split_out():
    entry = _entry("e1", "2026-01-01T10:00:00.000Z", shared="armbar from guard", private="armbar secret worry", tags=["Top"])
    shared, private_only = token_groups(entry)
    assert shared == ["top", "armbar", "guard"]
    assert private_only == ["secret", "worry"]


def test_private_keyword_key_uses_private_partition():
    pk, sk = keyword_key("a-1", "armbar", "2026-01-01T10:00:00.000Z", "e1", "private")
    assert pk == "USER_PRIVATE#a-1"
    assert sk == "KW#armbar#TS#2026-01-01T10:00:00.000Z#ENTRY#e1"


def test_keyword_index_diff_only_touches_changed_tokens():
    old = _entry("e1", "2026-01-01T10:00:00.000Z", shared="armbar guard")
    new = _entry("e1", "2026-01-01T10:00:00.000Z", shared="armbar mount")
    deletes, writes = keyword_index_diff(old, new)
    assert deletes == [("USER#a-1", "KW#guard#TS#2026-01-01T10:00:00.000Z#ENTRY#e1")]
    assert [w["SK"] for w in writes] == ["KW#mount#TS#2026-01-01T10:00:00.000Z#ENTRY#e1"]
    assert writes[0]["visibilityScope"] == "shared"


# ---------------------------------------------------------------------------
# one-thing cues
# ---------------------------------------------------------------------------


def test_one_thing_cue_keeps_first_sentence():
    assert normalize_one_thing_cue("1. Keep elbows tight. Then breathe") == "Keep elbows tight"
    assert normalize_one_thing_cue("   ") == ""


def test_one_thing_cue_clips_at_word_boundary():
    cue = normalize_one_thing_cue("frame " * 40)
    assert len(cue) <= 140
    assert cue.endswith("frame")


def test_review_artifact_falls_back_to_drill_prompt():
    review = normalize_session_review_artifact({
        "promptSet": {"whatWorked": ["pressure"], "whatToDrillSolo": ["  hip   escapes daily  "]},
        "oneThing": "",
        "confidenceFlags": [{"field": "oneThing", "confidence": "low"}, {"field": "bogus", "confidence": "low"}],
    })
    assert review["oneThing"] == "hip escapes daily"
    assert review["promptSet"]["whatFailed"] == []
    assert review["confidenceFlags"] == [{"field": "oneThing", "confidence": "low"}]


def test_review_artifact_without_any_cue_is_rejected():
    assert normalize_session_review_artifact({"promptSet": {}, "oneThing": ""}) is None


def test_recent_cues_prefer_final_review_and_newest_first():
    older = _entry("e1", "2026-01-01T10:00:00.000Z")
    older["sessionReviewDraft"] = {"oneThing": "Frame first"}
    newer = _entry("e2", "2026-01-02T10:00:00.000Z")
    newer["sessionReviewDraft"] = {"oneThing": "draft cue"}
    newer["sessionReviewFinal"] = {"review": {"oneThing": "Final cue"}}
    plain = _entry("e3", "2026-01-03T10:00:00.000Z")

    cues = list_recent_one_thing_cues([older, newer, plain], limit=5)
    assert cues == [
        {"entryId": "e2", "createdAt": "2026-01-02T10:00:00.000Z", "cue": "Final cue"},
        {"entryId": "e1", "createdAt": "2026-01-01T10:00:00.000Z", "cue": "Frame first"},
    ]
