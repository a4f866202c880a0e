"""Tests for stage output parsing and entity invariant checks."""

from __future__ import annotations

import pytest

from src.meetflow.analysis.errors import CapabilityError, ValidationError
from src.meetflow.analysis.validation import (
    DEFAULT_ADVICE_DISCLAIMER,
    ExtractedTasks,
    parse_issues,
    parse_mindmap,
    parse_summary,
    parse_tasks,
    parse_topics,
)


class TestParseTasks:
    def test_wrapped_and_bare_list(self):
        wrapped = parse_tasks({"tasks": [{"summary": " Ship it ", "details": " "}]})
        bare = parse_tasks([{"summary": "Ship it"}])
        assert wrapped == bare
        assert wrapped[0].summary == "Ship it"
        assert wrapped[0].details is None

    def test_zero_tasks_is_valid(self):
        assert parse_tasks({"tasks": []}) == []

    def test_accepts_response_model_instance(self):
        drafts = parse_tasks(ExtractedTasks.model_validate({"tasks": [{"summary": "a"}]}))
        assert drafts[0].summary == "a"

    def test_blank_summary_rejected(self):
        with pytest.raises(ValidationError):
            parse_tasks({"tasks": [{"summary": "  "}]})

    def test_wrong_shape_rejected(self):
        with pytest.raises(ValidationError, match="wrong shape"):
            parse_tasks("not json")

    def test_validation_error_is_capability_class(self):
        assert issubclass(ValidationError, CapabilityError)


class TestParseTopics:
    KNOWN = ["s0", "s1", "s2"]

    def test_ids_ordered_and_deduplicated(self):
        topics = parse_topics(
            {"topics": [{"title": "Budget", "segment_ids": ["s2", "s0", "s2"]}]}, self.KNOWN
        )
        assert topics == [("Budget", ["s0", "s2"])]

    def test_no_topics_rejected(self):
        with pytest.raises(ValidationError, match="no topics"):
            parse_topics({"topics": []}, self.KNOWN)

    def test_unknown_segment_rejected(self):
        with pytest.raises(ValidationError, match="unknown"):
            parse_topics({"topics": [{"title": "x", "segment_ids": ["s9"]}]}, self.KNOWN)

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError):
            parse_topics({"topics": [{"title": "", "segment_ids": ["s0"]}]}, self.KNOWN)


class TestParseMindmap:
    def test_depth_two_accepted(self):
        node = parse_mindmap({"label": "Budget", "children": [{"label": "Q3"}]})
        assert node.depth() == 2
        assert node.labels() == ["Budget", "Q3"]

    def test_nested_under_mindmap_key(self):
        node = parse_mindmap({"mindmap": {"label": "r", "children": [{"label": "c"}]}})
        assert node.label == "r"

    def test_root_only_rejected(self):
        with pytest.raises(ValidationError, match="depth"):
            parse_mindmap({"label": "lonely", "children": []})

    def test_blank_label_rejected(self):
        with pytest.raises(ValidationError):
            parse_mindmap({"label": "r", "children": [{"label": " "}]})


class TestParseSummary:
    def test_summary_and_takeaways(self):
        report = parse_summary({"summary": "Done.", "key_takeaways": ["one"]})
        assert report.summary == "Done."
        assert report.key_takeaways == ["one"]
        assert report.ai_advice == []

    def test_empty_summary_rejected(self):
        with pytest.raises(ValidationError, match="summary"):
            parse_summary({"summary": ""})


class TestParseIssues:
    def test_default_disclaimer_filled(self):
        items = parse_issues([{"issue": "i", "suggestion": "s"}])
        assert items[0].disclaimer == DEFAULT_ADVICE_DISCLAIMER

    def test_explicit_disclaimer_kept(self):
        items = parse_issues({"issues": [{"issue": "i", "suggestion": "s", "disclaimer": "d"}]})
        assert items[0].disclaimer == "d"

    def test_missing_suggestion_rejected(self):
        with pytest.raises(ValidationError):
            parse_issues({"issues": [{"issue": "i"}]})
