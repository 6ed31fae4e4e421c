from tutor.ingest.language import LanguageDetector


def test_devanagari_is_hindi_even_when_short():
    assert LanguageDetector().detect("वेग क्या है?") == "hi"


def test_english_sentence_is_detected():
    detector = LanguageDetector()
    assert detector.detect("What is the difference between speed and velocity of a moving car?") == "en"


def test_short_or_empty_text_uses_default():
    detector = LanguageDetector(default="en")
    assert detector.detect("   ") is None
    assert detector.detect("ok?") is None
    assert detector.detect_or_default("ok?") == "en"
