import json
import os
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


DEFAULT_SUBJECTS = {
    "Math": ["Algebra", "Geometry", "Calculus"],
    "Science": ["Physics", "Chemistry", "Biology"],
    "History": ["Ancient Civilizations", "World Wars", "Industrial Revolution"],
    "Literature": ["Shakespeare", "Poetry", "Modern Novels"],
}


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def freeze_catalog(subjects: Mapping[str, list]) -> Mapping[str, Tuple[str, ...]]:
    """Return a read-only copy of a subject -> topics mapping."""
    return MappingProxyType({str(subject): tuple(topics) for subject, topics in subjects.items()})


def load_catalog(path: Optional[str] = None) -> Mapping[str, Tuple[str, ...]]:
    """Load the subject catalog from a JSON file, or use the built-in one."""
    if not path:
        return freeze_catalog(DEFAULT_SUBJECTS)
    with open(path, encoding="utf-8") as f:
        subjects = json.load(f)
    if not isinstance(subjects, dict):
        raise ValueError(f"Subject catalog in {path} must be a JSON object")
    print(f"Loaded subject catalog from {path} ({len(subjects)} subjects)")
    return freeze_catalog(subjects)


class Settings:
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4")
    OPENAI_TIMEOUT_SECONDS = _get_int("OPENAI_TIMEOUT_SECONDS", 60)

    YOUTUBE_API_KEY = os.getenv("YOUTUBE_API_KEY")
    VIDEO_LANGUAGE = os.getenv("VIDEO_LANGUAGE", "en")

    CACHE_TTL_SECONDS = _get_int("CACHE_TTL_SECONDS", 3600)  # 1 hour TTL
    CACHE_MAX_ENTRIES = _get_int("CACHE_MAX_ENTRIES", 0)  # 0 = unbounded
    MAX_HISTORY_TURNS = _get_int("MAX_HISTORY_TURNS", 20)  # 0 = send full history

    SUBJECTS_FILE = os.getenv("SUBJECTS_FILE")
    PORT = _get_int("PORT", 3001)
