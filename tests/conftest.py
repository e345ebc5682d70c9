"""Shared fixtures: an isolated config singleton and a deterministic embedder."""

import re

import pytest

from codewright.engine import config as config_module
from codewright.engine.config import DEFAULT_CONFIG, Config


def bag_of_words(text: str, dims: int = 16) -> list[float]:
    vector = [0.0] * dims
    for word in re.findall(r"[a-z]+", text.lower()):
        vector[sum(map(ord, word)) % dims] += 1.0
    return vector


class FakeEmbedder:
    """Records every batch it is asked to embed."""

    def __init__(self):
        self.calls: list[list[str]] = []

    @property
    def embedded_texts(self) -> int:
        return sum(len(c) for c in self.calls)

    async def embed(self, texts):
        self.calls.append(list(texts))
        return [bag_of_words(t) for t in texts]


@pytest.fixture
def cfg():
    return Config(**{**DEFAULT_CONFIG, "embedding_enabled": True, "watch_enabled": False})


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path_factory, cfg):
    """Keep ~/.codewright and the config singleton out of the real home directory."""
    monkeypatch.setenv("HOME", str(tmp_path_factory.mktemp("home")))
    monkeypatch.setattr(config_module, "_config", cfg)
    return cfg


@pytest.fixture
def embedder():
    return FakeEmbedder()
