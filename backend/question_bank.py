import re
import json
import random
import asyncio
import logging
import time
from typing import List, Optional

import config

logger = logging.getLogger(__name__)

TRIVIA = "trivia"
VISUAL = "visual"

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_OPTION_LENGTH = 500
MAX_SUBJECT_LENGTH = 200
MAX_ASSET_LENGTH = 500


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from pool text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


def resolve_correct_index(options: List[str], answer: str) -> int:
    """Index of the first option labelled with the answer-key letter, or -1."""
    answer = (answer or "").strip()
    if not answer:
        return -1
    for i, option in enumerate(options):
        if option.startswith(answer):
            return i
    return -1


def _validate_trivia(record: dict, position: int) -> bool:
    if not isinstance(record, dict):
        logger.warning("Question %d: not an object", position)
        return False
    if not all(k in record for k in ("question", "options", "answer")):
        logger.warning("Question %d: missing required fields", position)
        return False
    options = record["options"]
    if not isinstance(options, list) or len(options) < 2 or not all(isinstance(o, str) for o in options):
        logger.warning("Question %d: invalid options", position)
        return False
    if resolve_correct_index(options, record["answer"]) < 0:
        logger.warning("Question %d: answer key %r matches no option", position, record["answer"])
        return False
    return True


def _validate_visual(record: dict, position: int) -> bool:
    if not isinstance(record, dict) or not record.get("subject") or not record.get("asset"):
        logger.warning("Visual prompt %d: missing subject or asset", position)
        return False
    return True


def public_question(question: dict) -> dict:
    """Question payload safe to send before the round is resolved."""
    hidden = ("answer", "correctIndex", "startTime", "maxTime")
    return {k: v for k, v in question.items() if k not in hidden}


class QuestionBank:
    """Static pool of trivia records and visual-prompt records."""

    def __init__(self, questions_file: str = config.QUESTIONS_FILE,
                 visual_file: str = config.VISUAL_PROMPTS_FILE):
        self.questions_file = questions_file
        self.visual_file = visual_file
        self.trivia: Optional[List[dict]] = None
        self.visual: Optional[List[dict]] = None
        self.rng = random.Random()

    def load(self):
        self.trivia = self._load_trivia(self.questions_file)
        self.visual = self._load_visual(self.visual_file)
        logger.info("Question pool loaded: %d trivia, %d visual", len(self.trivia), len(self.visual))

    def set_pool(self, trivia: List[dict], visual: Optional[List[dict]] = None):
        """Replace the pool with in-memory records (validated the same way as files)."""
        self.trivia = self._clean_trivia(trivia)
        self.visual = self._clean_visual(visual or [])

    def _read(self, path: str) -> list:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.warning("Question file not found: %s", path)
            return []
        except json.JSONDecodeError as e:
            logger.error("Failed to parse question file %s: %s", path, e)
            return []
        if not isinstance(data, list):
            logger.error("Question file %s must contain a JSON array", path)
            return []
        return data

    def _load_trivia(self, path: str) -> List[dict]:
        return self._clean_trivia(self._read(path))

    def _load_visual(self, path: str) -> List[dict]:
        return self._clean_visual(self._read(path))

    def _clean_trivia(self, records: list) -> List[dict]:
        pool = []
        for position, record in enumerate(records):
            if not _validate_trivia(record, position):
                continue
            pool.append({
                "question": _sanitize_text(record["question"])[:MAX_QUESTION_TEXT_LENGTH],
                "options": [_sanitize_text(o)[:MAX_OPTION_LENGTH] for o in record["options"]],
                "answer": record["answer"].strip(),
            })
        return pool

    def _clean_visual(self, records: list) -> List[dict]:
        pool = []
        for position, record in enumerate(records):
            if not _validate_visual(record, position):
                continue
            pool.append({
                "subject": _sanitize_text(str(record["subject"]))[:MAX_SUBJECT_LENGTH],
                "asset": str(record["asset"]).strip()[:MAX_ASSET_LENGTH],
            })
        return pool

    async def draw(self, kind: str = TRIVIA) -> Optional[dict]:
        """Pick a random question; the pool is read from disk on first use."""
        if self.trivia is None or self.visual is None:
            await asyncio.to_thread(self.load)
        if kind == VISUAL:
            return self.pick_visual()
        return self.pick_trivia()

    def pick_trivia(self) -> Optional[dict]:
        if not self.trivia:
            return None
        idx = self.rng.randrange(len(self.trivia))
        record = self.trivia[idx]
        return {
            "id": f"q_{int(time.time() * 1000)}_{idx}",
            "kind": TRIVIA,
            "question": record["question"],
            "options": list(record["options"]),
            "answer": record["answer"],
            # Resolved once here, never re-derived from the letter later
            "correctIndex": resolve_correct_index(record["options"], record["answer"]),
        }

    def pick_visual(self) -> Optional[dict]:
        if not self.visual:
            return None
        idx = self.rng.randrange(len(self.visual))
        record = self.visual[idx]
        distractors = list({v["subject"] for v in self.visual if v["subject"] != record["subject"]})
        self.rng.shuffle(distractors)
        options = [record["subject"]] + distractors[:config.VISUAL_OPTION_COUNT - 1]
        self.rng.shuffle(options)
        return {
            "id": f"v_{int(time.time() * 1000)}_{idx}",
            "kind": VISUAL,
            "question": "Who's that?",
            "asset": record["asset"],
            "options": options,
            "answer": record["subject"],
            "correctIndex": options.index(record["subject"]),
        }


question_bank = QuestionBank()
