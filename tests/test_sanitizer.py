"""Tests for ghost marker scrubbing."""

import time

import pytest

from hr_agent_api.sanitizer import StreamScrubber, scrub


class TestScrubVectors:
    """Known marker forms and their cleaned output."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("_STRONGSTART_age range_STRONGEND_", "age range"),
            ("__STRONGSTART__professional background__STRONGEND__", "professional background"),
            ("&lt;div&gt;_STRONGSTART_content_STRONGEND_&lt;/div&gt;", "&lt;div&gt;content&lt;/div&gt;"),
            ("&amp;STRONGSTART&amp;測試&amp;STRONGEND&amp;", "測試"),
            ("<strong>_STRONGSTART_文字_STRONGEND_</strong>", "<strong>文字</strong>"),
            ("_STRONG START_個人特質_STRONG END_", "個人特質"),
            ("_STRONGSTART__STRONGEND_", ""),
        ],
    )
    def test_known_vectors(self, raw: str, expected: str) -> None:
        """Test each known marker form is removed."""
        assert scrub(raw) == expected

    def test_mixed_chinese_text(self) -> None:
        """Test markers inside a longer Chinese paragraph."""
        raw = "這位候選人具備_STRONGSTART_豐富的經驗_STRONGEND_，並且_STRONGSTART_溝通能力佳_STRONGEND_。"
        assert scrub(raw) == "這位候選人具備豐富的經驗，並且溝通能力佳。"

    def test_bare_literals(self) -> None:
        """Test undelimited markers."""
        assert scrub("STRONGSTARTKey pointSTRONGEND") == "Key point"

    def test_lowercase_markers(self) -> None:
        """Test case-insensitive matching."""
        assert scrub("_strongstart_skills_strongend_") == "skills"

    def test_separated_forms(self) -> None:
        """Test STRONG and START/END split by underscores or whitespace."""
        assert scrub("STRONG_STARTgoalSTRONG_END") == "goal"
        assert scrub("Title: STRONG START Engineer STRONG END") == "Title:  Engineer "

    def test_separated_forms_any_case(self) -> None:
        """Test whitespace-separated markers match in mixed and lower case."""
        assert scrub("Strong Start Engineer Strong End") == " Engineer "
        assert scrub("a strong  start here") == "a  here"

    def test_reordered_forms(self) -> None:
        """Test END/START appearing before STRONG."""
        assert scrub("STARTSTRONGnameEND_STRONG") == "name"

    def test_numeric_character_references(self) -> None:
        """Test markers inside numeric character references."""
        assert scrub("a&#60;STRONGSTART&#62;b") == "ab"

    def test_escaped_tag(self) -> None:
        """Test markers inside HTML-escaped brackets."""
        assert scrub("x&lt;STRONGEND&gt;y") == "xy"

    def test_literal_tag(self) -> None:
        """Test markers inside literal tag syntax."""
        assert scrub("one<STRONGSTART>two") == "onetwo"

    def test_nested_markers(self) -> None:
        """Test a marker that only appears after an inner one is removed."""
        assert scrub("STRONGSTRONGSTARTSTART text") == " text"


class TestScrubProperties:
    """Tests for totality and idempotence."""

    def test_empty_string(self) -> None:
        """Test empty input is returned unchanged."""
        assert scrub("") == ""

    def test_none(self) -> None:
        """Test None input is returned unchanged."""
        assert scrub(None) is None

    @pytest.mark.parametrize(
        "text",
        [
            "Plain text with no markers.",
            "snake_case__names stay __as they are__",
            "Starting strong, the team will attend until the end.",
            "START and END of the STRONG section",
            "純文字，沒有任何標記。",
        ],
    )
    def test_prose_unchanged(self, text: str) -> None:
        """Test text without markers is returned byte-for-byte."""
        assert scrub(text) == text

    @pytest.mark.parametrize(
        "text",
        [
            "_STRONGSTART_age range_STRONGEND_",
            "STRONGSTRONGSTARTSTART",
            "__STRONG___START__x__",
            "&amp;STRONGSTART&amp;測試&amp;STRONGEND&amp;",
            "a strong start",
        ],
    )
    def test_idempotent(self, text: str) -> None:
        """Test scrubbing twice equals scrubbing once."""
        once = scrub(text)
        assert scrub(once) == once

    def test_long_underscore_run_is_linear(self) -> None:
        """Test a long underscore run next to a keyword does not backtrack."""
        text = "The END " + "_" * 20000 + " x"
        started = time.perf_counter()
        assert scrub(text) == text
        assert time.perf_counter() - started < 1.0

    def test_long_underscore_run_before_marker(self) -> None:
        """Test a long leading run is consumed with its marker."""
        assert scrub("_" * 20000 + "STRONGSTART" + "name") == "name"

    def test_markers_only_reduce_to_empty(self) -> None:
        """Test input made only of markers becomes empty."""
        assert scrub("STRONGSTART__STRONGEND_STRONG_START_STRONG END_") == ""


class TestStreamScrubber:
    """Tests for incremental scrubbing across chunk boundaries."""

    def test_marker_split_across_chunks(self) -> None:
        """Test a marker straddling two chunks is removed."""
        scrubber = StreamScrubber()
        out = scrubber.feed("候選人具備_STRONG")
        out += scrubber.feed("START_經驗_STRONGEND_。")
        out += scrubber.flush()
        assert out == "候選人具備經驗。"

    def test_plain_text_passes_through(self) -> None:
        """Test text without markers is fully released by flush."""
        scrubber = StreamScrubber()
        chunks = ["Hello ", "world, ", "this is fine."]
        out = "".join(scrubber.feed(c) for c in chunks) + scrubber.flush()
        assert out == "Hello world, this is fine."

    def test_holdback_is_bounded(self) -> None:
        """Test the withheld tail never exceeds the holdback limit."""
        scrubber = StreamScrubber()
        released = scrubber.feed("a" * 500)
        assert len(released) >= 500 - StreamScrubber.HOLDBACK

    def test_non_marker_text_released_early(self) -> None:
        """Test text that cannot start a marker is not withheld."""
        scrubber = StreamScrubber()
        assert scrubber.feed("你好。") == "你好。"

    def test_flush_resets(self) -> None:
        """Test flush empties the pending buffer."""
        scrubber = StreamScrubber()
        scrubber.feed("abc")
        assert scrubber.flush() == "abc"
        assert scrubber.flush() == ""

    def test_empty_fragment(self) -> None:
        """Test an empty fragment releases nothing."""
        assert StreamScrubber().feed("") == ""
