import json
import re
from pathlib import Path

import pytest

# Load a test-specific environment file so pytest runs are consistent locally and in VS Code
try:
    from dotenv import load_dotenv
    _root = Path(__file__).resolve().parents[1]
    _env_test = _root / ".env.test"
    if _env_test.exists():
        load_dotenv(dotenv_path=_env_test, override=True)
except Exception:
    # Non-fatal if dotenv is unavailable; tests also work without it
    pass

from storyexpander.generation import GenerationClient, ImageClient
from storyexpander.llm import ImageResult
from storyexpander.pipeline import Pipeline
from storyexpander.store import MemoryStateStore


ALICE_BOB_DRAFT = "Alice meets Bob. They fight a dragon. They win."

ELEMENTS_JSON = {
    "characters": [
        {"name": "Alice", "gender": "female", "role": "protagonist", "traits": "brave, stubborn"},
        {"name": "Bob", "gender": "male", "role": "companion", "traits": "cautious, loyal"},
    ],
    "keyEvents": ["Alice meets Bob", "They fight a dragon", "They win"],
    "timeline": ["Meeting", "Battle", "Victory"],
    "uniqueDetails": ["Dragon lair in the northern mountains"],
    "mainStoryLines": ["Alice and Bob's friendship", "The dragon threat", "Earning victory"],
}


def chapter_obj(n: int, label: str = "Chapter") -> dict:
    return {
        "title": f"{label} {n} Title",
        "summary": f"In part {n}, Alice and Bob press on. Things change. The stakes rise.",
        "keyEvents": [f"Event {n}a", f"Event {n}b"],
        "characterTraits": ["Alice: brave", "Bob: loyal"],
        "timeline": f"Day {n}",
    }


def outline_json(count: int = 6, first: int = 1, label: str = "Chapter") -> str:
    return json.dumps([chapter_obj(first + i, label) for i in range(count)])


def words(n: int, word: str = "lorem") -> str:
    return " ".join([word] * n)


# Ordered: more specific phrases first
_KINDS = [
    ("entities", "List any new persistent story elements"),
    ("refine", "Revise this single chapter outline entry"),
    ("continuation", "Rewrite the outline from chapter"),
    ("outline", "Split this condensed story into"),
    ("elements", "Extract the story elements"),
    ("summarize", "Summarize this story chunk"),
    ("expand_more", "Continue this chapter"),
    ("expand", "Expand this chapter into"),
    ("cover", "cover illustration of this novel"),
    ("illustration", "Write an image prompt for an illustration"),
]


def classify(prompt: str) -> str:
    for kind, phrase in _KINDS:
        if phrase in prompt:
            return kind
    return "unknown"


class FakeLLM:
    """Scripted stand-in for llm.complete.

    Each prompt is classified by its template's opening phrase. Queued
    responses for a kind are consumed first (an Exception instance is raised
    instead of returned); afterwards a well-formed default is produced.
    """

    def __init__(self):
        self.calls = []
        self._queues = {}
        self.on_call = None

    def queue(self, kind: str, *responses) -> None:
        self._queues.setdefault(kind, []).extend(responses)

    def kinds(self):
        return [c["kind"] for c in self.calls]

    def __call__(self, prompt, *, system=None, temperature=0.7, max_tokens=4000, model=None):
        kind = classify(prompt)
        self.calls.append({"kind": kind, "prompt": prompt, "model": model})
        if self.on_call is not None:
            self.on_call(kind, prompt)
        q = self._queues.get(kind)
        if q:
            item = q.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self._default(kind, prompt)

    def _default(self, kind: str, prompt: str) -> str:
        if kind == "summarize":
            return "Alice meets Bob, and together they fight a dragon and win."
        if kind == "elements":
            return json.dumps(ELEMENTS_JSON)
        if kind == "outline":
            return outline_json(6)
        if kind == "continuation":
            m = re.search(r"from chapter (\d+) to chapter (\d+) \((\d+) chapters\)", prompt)
            first, count = int(m.group(1)), int(m.group(3))
            return outline_json(count, first, label="Revised")
        if kind == "refine":
            m = re.search(r"Primary directive for chapter (\d+)", prompt)
            return json.dumps(chapter_obj(int(m.group(1)), label="Refined"))
        if kind == "entities":
            return json.dumps({"characters": [], "keyEvents": [], "timeline": [], "uniqueDetails": [], "mainStoryLines": []})
        if kind == "expand":
            m = re.search(r"Chapter (\d+) of (\d+): ([^\n]+)", prompt)
            return f"Prose for {m.group(3)}. " + words(900)
        if kind == "expand_more":
            return words(600, "ipsum")
        if kind in ("illustration", "cover"):
            return "A painted scene of two travellers facing a dragon at dusk."
        return "ok"


class FakeImages:
    """Scripted stand-in for llm.generate_image."""

    def __init__(self):
        self.prompts = []
        self._queue = []

    def queue(self, *results) -> None:
        self._queue.extend(results)

    def __call__(self, prompt):
        self.prompts.append(prompt)
        if self._queue:
            item = self._queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return ImageResult(image_url=f"https://images.example/{len(self.prompts)}.png")


@pytest.fixture(autouse=True)
def sandbox_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # Keep logs/state inside the per-test sandbox and make retries instant
    monkeypatch.setenv("SE_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("SE_RETRY_BASE_DELAY", "0")
    monkeypatch.setenv("SE_IMAGE_DELAY_SECONDS", "0")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    for k in (
        "SE_STATE_DIR", "SE_PROMPTS_DIR", "SE_MODEL_DEFAULT", "SE_MODEL_FALLBACK", "SE_LOG_LLM",
        "SE_RETRY_ATTEMPTS", "SE_CHUNK_MAX_BYTES", "SE_DIGEST_BASE_CHARS", "SE_DIGEST_PER_CHAPTER_CHARS",
        "SE_DIGEST_MAX_CHARS", "SE_TEMP_DEFAULT", "SE_MAX_TOKENS_DEFAULT", "OPENAI_BASE_URL", "OPENAI_API_BASE", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT",
    ):
        monkeypatch.delenv(k, raising=False)
    yield


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def fake_images() -> FakeImages:
    return FakeImages()


@pytest.fixture()
def generator(fake_llm) -> GenerationClient:
    return GenerationClient(fake_llm, fallback_model="gpt-4o-mini", attempts=3, base_delay=0)


@pytest.fixture()
def image_client(fake_images) -> ImageClient:
    return ImageClient(fake_images, attempts=3, base_delay=0)


@pytest.fixture()
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture()
def pipeline(store, generator, image_client) -> Pipeline:
    return Pipeline(store, generator, image_client, credential=lambda: "sk-test-key", sleep=lambda s: None)
