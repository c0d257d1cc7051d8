"""
Stop-word language gate.

A coarse, dependency-free filter that keeps non-English questions away from
the paid providers. It counts stop-word hits per language over lowercased
letter-only tokens and applies a fixed decision order; it is not a language
identification model.

Stop-word lists are data: the built-in lists can be replaced with a JSON file
``{"en": [...], "es": [...], "fr": [...]}`` (LANG_STOPWORDS_PATH).
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Union

from loguru import logger

TARGET_LANG = "en"
UNKNOWN_LANG = "unknown"

_LETTER_RUN = re.compile(r"[^\W\d_]+")

DEFAULT_STOPWORDS: Dict[str, FrozenSet[str]] = {
    "en": frozenset(
        "the and of to in is for on with from how what where when can do does a an please".split()
    ),
    "es": frozenset(
        "hola gracias por favor como que donde cuando para con sin del la el los las un una unos "
        "unas y o pero porque quien quienes cual cuanto cuantos cuanta cuantas al de en".split()
    ),
    "fr": frozenset(
        "bonjour merci svp comment quand pour avec sans du de la le les un une des et ou mais parce "
        "qui quoi quel quelle quels quelles a au aux en aller plage".split()
    ),
}


def load_stopwords(path: Union[str, Path]) -> Dict[str, FrozenSet[str]]:
    """Read stop-word lists from JSON; every list is lowercased."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"stop-word file {path} must be a JSON object")
    out = {str(lang).lower(): frozenset(w.lower() for w in words) for lang, words in data.items()}
    logger.info(f"Loaded stop-words for {sorted(out)} from {path}")
    return out


def tokenize(text: str) -> list:
    return _LETTER_RUN.findall(text.lower())


class LanguageGate:
    """
    Decide whether a question is in the target language.

    Decision order:
      (a) empty or <= 2 tokens: target
      (b) >= 2 target stop-word hits: target
      (c) a non-target language with >= 2 hits that strictly beats the target
          and every other non-target language: that language
      (d) any non-target hit and zero target hits: the non-target language
          with most hits
      (e) any non-ASCII letter and zero target hits: unknown
      (f) otherwise: target
    """

    def __init__(self, stopwords: Optional[Mapping[str, Iterable[str]]] = None, target: str = TARGET_LANG):
        lists = stopwords if stopwords is not None else DEFAULT_STOPWORDS
        self.target = target
        self.stopwords: Dict[str, FrozenSet[str]] = {k: frozenset(v) for k, v in lists.items()}
        if target not in self.stopwords:
            raise ValueError(f"no stop-words for target language {target!r}")

    @classmethod
    def from_file(cls, path: Optional[Union[str, Path]], target: str = TARGET_LANG) -> "LanguageGate":
        if not path:
            return cls(target=target)
        return cls(load_stopwords(path), target=target)

    def hits(self, tokens: Iterable[str]) -> Dict[str, int]:
        counts = {lang: 0 for lang in self.stopwords}
        for tok in tokens:
            for lang, words in self.stopwords.items():
                if tok in words:
                    counts[lang] += 1
        return counts

    def detect(self, question: str) -> str:
        """Return the target code, a rejecting language code, or 'unknown'."""
        text = question.strip().lower()
        if not text:
            return self.target
        tokens = tokenize(text)
        if len(tokens) <= 2:
            return self.target

        counts = self.hits(tokens)
        target_hits = counts.pop(self.target)
        if target_hits >= 2:
            return self.target

        for lang, n in counts.items():
            others = [m for other, m in counts.items() if other != lang]
            if n >= 2 and n > target_hits and all(n > m for m in others):
                return lang

        if target_hits == 0 and any(counts.values()):
            return max(counts, key=lambda lang: counts[lang])

        if target_hits == 0 and any(ch.isalpha() and ord(ch) > 127 for ch in text):
            return UNKNOWN_LANG
        return self.target

    def is_target_language(self, question: str) -> bool:
        return self.detect(question) == self.target
