"""Tests for ResponseAccumulator."""

from coach_chat.core.accumulator import ResponseAccumulator


def _feed(chunks: list[tuple[str, str]]) -> ResponseAccumulator:
    acc = ResponseAccumulator()
    for kind, text in chunks:
        if kind == "c":
            acc = acc.append_content(text)
        else:
            acc = acc.append_reasoning(text)
    return acc


class TestAppend:
    def test_content_is_concatenation_of_deltas(self):
        text = "Great set! Try 82.5kg next time."
        for size in (1, 3, 7, len(text)):
            chunks = [("c", text[i:i + size]) for i in range(0, len(text), size)]
            assert _feed(chunks).content == text

    def test_reasoning_independent_of_content(self):
        acc = _feed([
            ("r", "user did "), ("c", "Nice "), ("r", "8 reps"), ("c", "work!"),
        ])
        assert acc.content == "Nice work!"
        assert acc.reasoning == "user did 8 reps"

    def test_reasoning_starts_absent(self):
        acc = ResponseAccumulator().append_content("x")
        assert acc.reasoning is None
        assert not acc.has_reasoning

    def test_immutable(self):
        acc = ResponseAccumulator()
        acc.append_content("x")
        assert acc.content == ""


class TestBinding:
    def test_bind(self):
        acc = ResponseAccumulator()
        assert not acc.is_bound
        acc = acc.bind(3)
        assert acc.is_bound
        assert acc.message_index == 3

    def test_mark_complete(self):
        assert ResponseAccumulator().mark_complete().is_complete


class TestFallback:
    def test_fallback_keeps_streamed_reasoning(self):
        acc = _feed([("r", "step 1..."), ("c", "partial")])
        acc = acc.with_fallback("full answer", None)
        assert acc.content == "full answer"
        assert acc.reasoning == "step 1..."
        assert acc.is_complete

    def test_fallback_reasoning_wins_when_present(self):
        acc = _feed([("r", "old")]).with_fallback("answer", "new reasoning")
        assert acc.reasoning == "new reasoning"

    def test_fallback_keeps_binding(self):
        acc = _feed([("c", "x")]).bind(1).with_fallback("y", None)
        assert acc.message_index == 1


class TestFinalize:
    def test_empty(self):
        final = ResponseAccumulator().finalize()
        assert final.is_empty
        assert final.reasoning is None

    def test_whitespace_only_is_empty(self):
        assert _feed([("c", "  \n ")]).finalize().is_empty

    def test_reasoning_only_is_not_empty(self):
        final = _feed([("r", "hmm")]).finalize()
        assert not final.is_empty
        assert final.reasoning == "hmm"

    def test_empty_reasoning_normalized(self):
        acc = ResponseAccumulator(content="hi", reasoning="")
        assert acc.finalize().reasoning is None
