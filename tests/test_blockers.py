"""Unit tests for repeated-blocker detection."""

from __future__ import annotations

import hashlib
from pathlib import Path

from forgeloop.blockers import BlockerDetector, fingerprint_ids, open_question_ids
from forgeloop.schemas import BlockerState
from forgeloop.state_store import BlockerStateFile, MemoryStore

QUESTIONS = """# Questions

## Q-3
- ⏳ Awaiting response

## Q-2
- ✅ Answered

## Q-1
- ⏳ Awaiting response
"""


class TestOpenQuestions:
    def test_awaiting_sections_sorted(self):
        assert open_question_ids(QUESTIONS) == ["Q-1", "Q-3"]

    def test_answered_sections_are_excluded(self):
        text = "## Q-1\n- ⏳ Awaiting response\n- ✅ Answered\n"
        assert open_question_ids(text) == []

    def test_last_section_is_counted(self):
        assert open_question_ids("## Q-9\n- ⏳ Awaiting response") == ["Q-9"]

    def test_non_question_headings_close_a_section(self):
        text = "## Q-1\n## Notes\n- ⏳ Awaiting response\n"
        assert open_question_ids(text) == []

    def test_empty_document(self):
        assert open_question_ids("") == []


class TestFingerprint:
    def test_order_independent(self):
        assert fingerprint_ids(["Q-3", "Q-1"]) == fingerprint_ids(["Q-1", "Q-3"])

    def test_matches_sha256_of_sorted_ids(self):
        expected = hashlib.sha256(b"Q-1\nQ-3").hexdigest()
        assert fingerprint_ids(["Q-3", "Q-1"]) == expected

    def test_none_when_empty(self):
        assert fingerprint_ids([]) is None


class TestDetector:
    def _detector(self, tmp_path: Path, text: str) -> tuple[BlockerDetector, MemoryStore]:
        questions = tmp_path / "QUESTIONS.md"
        questions.write_text(text, encoding="utf-8")
        store = MemoryStore(BlockerState())
        return BlockerDetector(questions, store, threshold=3), store

    def test_blocks_on_third_identical_cycle(self, tmp_path: Path):
        detector, store = self._detector(tmp_path, QUESTIONS)

        assert [detector.check_and_update() for _ in range(3)] == [False, False, True]
        assert store.load().consecutive_count == 3

    def test_new_question_restarts_count(self, tmp_path: Path):
        detector, store = self._detector(tmp_path, QUESTIONS)
        detector.check_and_update()
        detector.check_and_update()

        detector.questions_path.write_text(
            QUESTIONS + "\n## Q-4\n- ⏳ Awaiting response\n", encoding="utf-8"
        )

        assert detector.check_and_update() is False
        assert store.load().consecutive_count == 1

    def test_no_open_questions_resets_state(self, tmp_path: Path):
        detector, store = self._detector(tmp_path, QUESTIONS)
        detector.check_and_update()

        detector.questions_path.write_text("## Q-1\n- ✅ Answered\n", encoding="utf-8")

        assert detector.check_and_update() is False
        assert store.load() == BlockerState()

    def test_missing_questions_file_is_not_blocked(self, tmp_path: Path):
        store = MemoryStore(BlockerState(consecutive_count=5, last_fingerprint="x"))
        detector = BlockerDetector(tmp_path / "QUESTIONS.md", store)

        assert detector.check_and_update() is False
        assert store.load() == BlockerState()

    def test_reset_after_cooldown_keeps_fingerprint(self, tmp_path: Path):
        detector, store = self._detector(tmp_path, QUESTIONS)
        for _ in range(3):
            detector.check_and_update()

        detector.reset_after_cooldown()

        state = store.load()
        assert state.consecutive_count == 0
        assert state.last_fingerprint == fingerprint_ids(["Q-1", "Q-3"])
        # unchanged questions need a full threshold of cycles again
        assert [detector.check_and_update() for _ in range(3)] == [False, False, True]

    def test_state_survives_in_daemon_state_file(self, tmp_path: Path):
        questions = tmp_path / "QUESTIONS.md"
        questions.write_text(QUESTIONS, encoding="utf-8")
        path = tmp_path / ".forgeloop" / "daemon.state"

        BlockerDetector(questions, BlockerStateFile(path)).check_and_update()
        second = BlockerDetector(questions, BlockerStateFile(path))

        assert second.check_and_update() is False
        assert BlockerStateFile(path).load().consecutive_count == 2
