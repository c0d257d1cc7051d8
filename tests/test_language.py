"""Test the stop-word language gate."""

import json

import pytest

from ragchat.language import LanguageGate, tokenize


@pytest.fixture
def gate():
    return LanguageGate()


class TestDetect:
    @pytest.mark.parametrize(
        "question",
        [
            "How do I get to the airport from the city?",
            "What is the best beach for kids?",
            "Where can I find the bus schedule?",
        ],
    )
    def test_english(self, gate, question):
        assert gate.detect(question) == "en"
        assert gate.is_target_language(question)

    @pytest.mark.parametrize(
        "question",
        [
            "¿Dónde está la playa?",
            "Cómo llego al aeropuerto desde el centro",
        ],
    )
    def test_spanish(self, gate, question):
        assert gate.detect(question) == "es"
        assert not gate.is_target_language(question)

    def test_french(self, gate):
        assert gate.detect("Comment aller à la plage pour nager") == "fr"

    @pytest.mark.parametrize("question", ["", "   ", "Hola amigo", "Playa?"])
    def test_short_questions_pass(self, gate, question):
        assert gate.detect(question) == "en"

    def test_non_ascii_without_hits_is_unknown(self, gate):
        assert gate.detect("Привет как дела") == "unknown"

    def test_no_hits_ascii_passes(self, gate):
        assert gate.detect("Bus C6 schedule tonight") == "en"

    def test_two_english_hits_win(self, gate):
        assert gate.detect("la playa and the port") == "en"


class TestStopwordData:
    def test_tokenize_letters_only(self):
        assert tokenize("C-6 bus, 20 min!") == ["c", "bus", "min"]

    def test_from_file(self, tmp_path):
        path = tmp_path / "stopwords.json"
        path.write_text(json.dumps({"en": ["the", "and"], "de": ["der", "die", "und"]}))
        gate = LanguageGate.from_file(path)
        assert gate.detect("der Bus und die Bahn") == "de"

    def test_from_file_without_path_uses_defaults(self):
        assert LanguageGate.from_file(None).detect("¿Dónde está la playa?") == "es"

    def test_target_must_have_stopwords(self):
        with pytest.raises(ValueError):
            LanguageGate({"es": ["la"]})
