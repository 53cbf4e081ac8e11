"""Tests for StreamClassifier marker detection."""

import pytest

from autoreact.api.models import ContentType
from autoreact.react.classifier import StreamClassifier


def _feed_all(classifier, fragments):
    chunks = []
    for fragment in fragments:
        chunks.extend(classifier.feed(fragment))
    chunks.extend(classifier.flush())
    return [(c.type, c.content) for c in chunks]


def test_plain_text_is_reasoning():
    assert _feed_all(StreamClassifier(), ["Hello world"]) == [(ContentType.REASONING, "Hello world")]


def test_markers_switch_type_per_line():
    result = _feed_all(StreamClassifier(), ["THINK: add them\nACTION: calc.add(1, 2)\n"])
    assert result == [
        (ContentType.THINKING, " add them\n"),
        (ContentType.ACTION, " calc.add(1, 2)\n"),
    ]


def test_marker_split_across_fragments():
    result = _feed_all(StreamClassifier(), ["AN", "SWER: 42"])
    assert result == [(ContentType.ANSWER, " 42")]


def test_locked_line_streams_following_fragments():
    result = _feed_all(StreamClassifier(), ["THINK: hel", "lo\n"])
    assert result == [(ContentType.THINKING, " hel"), (ContentType.THINKING, "lo\n")]


def test_type_carries_over_to_unmarked_line():
    result = _feed_all(StreamClassifier(), ["ANSWER: first\n", "second line\n"])
    assert result == [(ContentType.ANSWER, " first\n"), (ContentType.ANSWER, "second line\n")]


def test_case_and_full_width_colon():
    result = _feed_all(StreamClassifier(), ["ask：要继续吗？\n"])
    assert result == [(ContentType.ASK, "要继续吗？\n")]


def test_hide_action_drops_only_action_chunks():
    result = _feed_all(StreamClassifier(hide_action=True), ["THINK: t\nACTION: x(1)\nANSWER: a\n"])
    assert result == [(ContentType.THINKING, " t\n"), (ContentType.ANSWER, " a\n")]


def test_blank_first_fragment_skipped():
    assert _feed_all(StreamClassifier(), ["  ", "ANSWER: ok"]) == [(ContentType.ANSWER, " ok")]


def test_short_buffer_flushed_at_end():
    assert _feed_all(StreamClassifier(), ["Hi"]) == [(ContentType.REASONING, "Hi")]


def test_empty_fragments_ignored():
    classifier = StreamClassifier()
    assert classifier.feed("") == []
    assert classifier.feed(None) == []


@pytest.mark.asyncio
async def test_classify_async_iterator():
    async def fragments():
        for piece in ["THI", "NK: a\n", "ANSWER: b"]:
            yield piece

    chunks = [(c.type, c.content) async for c in StreamClassifier().classify(fragments())]
    assert chunks == [(ContentType.THINKING, " a\n"), (ContentType.ANSWER, " b")]


def test_content_type_lookups():
    assert ContentType.ACTION_START.display_name == "Action Start"
    assert ContentType.ANSWER.marker == "[Answer]"
    assert ContentType.from_marker("[Observation]") is ContentType.OBSERVATION
    assert ContentType.from_marker("[Nope]") is ContentType.CONTENT
    assert ContentType.from_display_name("Ask") is ContentType.ASK
    assert ContentType.from_display_name(None) is ContentType.CONTENT
