import sys
import os
import json

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from question_bank import (TRIVIA, VISUAL, QuestionBank, _sanitize_text,
                           public_question, resolve_correct_index)


TRIVIA_POOL = [
    {"question": "Capital of France?", "options": ["A. Berlin", "B. Paris", "C. Rome", "D. Madrid"], "answer": "B"},
    {"question": "2 + 2?", "options": ["A. 4", "B. 5"], "answer": "A"},
]

VISUAL_POOL = [
    {"subject": "Pikachu", "asset": "https://img.example/pikachu.png"},
    {"subject": "Bulbasaur", "asset": "https://img.example/bulbasaur.png"},
    {"subject": "Charmander", "asset": "https://img.example/charmander.png"},
    {"subject": "Squirtle", "asset": "https://img.example/squirtle.png"},
    {"subject": "Eevee", "asset": "https://img.example/eevee.png"},
]


class TestResolveCorrectIndex:
    def test_letter_prefix(self):
        assert resolve_correct_index(["A. x", "B. y", "C. z"], "B") == 1

    def test_first_match_wins(self):
        assert resolve_correct_index(["A. x", "A. y"], "A") == 0

    def test_no_match(self):
        assert resolve_correct_index(["A. x", "B. y"], "E") == -1

    def test_empty_answer(self):
        assert resolve_correct_index(["A. x"], "") == -1


class TestSanitize:
    def test_strips_html_and_control_chars(self):
        assert _sanitize_text("  <b>Hi</b>\x00 there ") == "Hi there"


class TestPublicQuestion:
    def test_hides_answer_fields(self):
        q = {"id": "q1", "question": "Q", "options": ["A", "B"], "answer": "A",
             "correctIndex": 0, "startTime": 1, "maxTime": 15}
        assert public_question(q) == {"id": "q1", "question": "Q", "options": ["A", "B"]}


class TestPool:
    def test_invalid_records_dropped(self):
        bank = QuestionBank()
        bank.set_pool(TRIVIA_POOL + [
            {"question": "No options", "answer": "A"},
            {"question": "Bad key", "options": ["A. x", "B. y"], "answer": "Z"},
            "not a record",
        ])
        assert len(bank.trivia) == 2

    def test_load_from_files(self, tmp_path):
        trivia_file = tmp_path / "questions.json"
        visual_file = tmp_path / "visual.json"
        trivia_file.write_text(json.dumps(TRIVIA_POOL))
        visual_file.write_text(json.dumps(VISUAL_POOL))
        bank = QuestionBank(str(trivia_file), str(visual_file))
        bank.load()
        assert len(bank.trivia) == 2
        assert len(bank.visual) == 5

    def test_missing_file_gives_empty_pool(self, tmp_path):
        bank = QuestionBank(str(tmp_path / "none.json"), str(tmp_path / "none2.json"))
        bank.load()
        assert bank.trivia == []
        assert bank.visual == []

    def test_malformed_file_gives_empty_pool(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        bank = QuestionBank(str(bad), str(bad))
        bank.load()
        assert bank.trivia == []

    def test_bundled_pool_is_valid(self):
        bank = QuestionBank()
        bank.load()
        assert len(bank.trivia) > 0
        assert len(bank.visual) > 0


class TestDraw:
    @pytest.mark.asyncio
    async def test_trivia_question(self):
        bank = QuestionBank()
        bank.set_pool(TRIVIA_POOL[:1])
        q = await bank.draw()
        assert q["kind"] == TRIVIA
        assert q["question"] == "Capital of France?"
        assert q["correctIndex"] == 1
        assert q["answer"] == "B"
        assert q["id"].startswith("q_")

    @pytest.mark.asyncio
    async def test_correct_index_points_at_answer(self):
        bank = QuestionBank()
        bank.set_pool(TRIVIA_POOL)
        for _ in range(20):
            q = await bank.draw()
            assert q["options"][q["correctIndex"]].startswith(q["answer"])

    @pytest.mark.asyncio
    async def test_empty_pool(self):
        bank = QuestionBank()
        bank.set_pool([])
        assert await bank.draw() is None
        assert await bank.draw(VISUAL) is None

    @pytest.mark.asyncio
    async def test_visual_question(self):
        bank = QuestionBank()
        bank.set_pool(TRIVIA_POOL, VISUAL_POOL)
        q = await bank.draw(VISUAL)
        assert q["kind"] == VISUAL
        assert len(q["options"]) == 4
        assert len(set(q["options"])) == 4
        assert q["options"][q["correctIndex"]] == q["answer"]
        assert q["asset"].startswith("https://img.example/")

    @pytest.mark.asyncio
    async def test_visual_with_few_subjects(self):
        bank = QuestionBank()
        bank.set_pool(TRIVIA_POOL, VISUAL_POOL[:2])
        q = await bank.draw(VISUAL)
        assert len(q["options"]) == 2
        assert q["options"][q["correctIndex"]] == q["answer"]
