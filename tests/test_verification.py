from types import SimpleNamespace

import openai
import pytest

import config
import verification
from errors import ParseError, VerificationError


def fake_client(answer=None, error=None):
    """Mimics client.chat.completions.create and records what was sent."""
    sent = []

    def create(**kwargs):
        sent.append(kwargs)
        if error:
            raise error
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=answer))])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    client.sent = sent
    return client


def test_extract_json_from_code_fence():
    raw = 'Here you go:\n```json\n{"wasteType": "plastic", "quantity": "5 kg", "confidence": 0.8}\n```'
    assert verification.extract_json(raw) == {"wasteType": "plastic", "quantity": "5 kg", "confidence": 0.8}


def test_extract_json_bare_object():
    assert verification.extract_json('{"confidence": 0.5}') == {"confidence": 0.5}


@pytest.mark.parametrize("raw", ["no json here", "```json\nnot json\n```", "[1, 2, 3]", "{broken"])
def test_extract_json_rejects_garbage(raw):
    with pytest.raises(ParseError):
        verification.extract_json(raw)


def test_analyze_report_image():
    client = fake_client('```\n{"wasteType": "glass", "quantity": 3, "confidence": 0.9}\n```')

    analysis = verification.analyze_report_image(b"img", "image/png", client=client)

    assert analysis.waste_type == "glass"
    assert analysis.quantity == "3"
    assert analysis.confidence == 0.9
    content = client.sent[0]["messages"][0]["content"]
    assert content[0]["text"] == verification.REPORT_PROMPT
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert client.sent[0]["model"] == config.AI_MODEL


def test_collection_prompt_mentions_report():
    client = fake_client('{"wasteTypeMatch": true, "quantityMatch": true, "confidence": 0.8}')

    check = verification.verify_collection_image(b"img", "image/jpeg", "plastic", 5.0, client=client)

    assert check.accepted
    prompt = client.sent[0]["messages"][0]["content"][0]["text"]
    assert "plastic" in prompt
    assert "5.0 kg" in prompt


def test_percentage_confidence_is_normalized():
    client = fake_client('{"wasteTypeMatch": true, "quantityMatch": true, "confidence": 85}')
    check = verification.verify_collection_image(b"img", "image/jpeg", "plastic", 5.0, client=client)
    assert check.confidence == pytest.approx(0.85)


@pytest.mark.parametrize("confidence,accepted", [(0.71, True), (0.7, False), (0.5, False)])
def test_acceptance_threshold(confidence, accepted):
    check = verification.CollectionCheck(wasteTypeMatch=True, quantityMatch=True, confidence=confidence)
    assert check.accepted is accepted


def test_missing_keys_is_a_parse_error():
    client = fake_client('{"wasteTypeMatch": true, "confidence": 0.9}')
    with pytest.raises(ParseError):
        verification.verify_collection_image(b"img", "image/jpeg", "plastic", 5.0, client=client)


def test_non_numeric_confidence_is_a_parse_error():
    client = fake_client('{"wasteType": "paper", "quantity": "1kg", "confidence": "high"}')
    with pytest.raises(ParseError):
        verification.analyze_report_image(b"img", "image/jpeg", client=client)


@pytest.mark.parametrize("value", ["true", "false"])
def test_boolean_confidence_is_a_parse_error(value):
    client = fake_client('{"wasteTypeMatch": true, "quantityMatch": true, "confidence": ' + value + '}')
    with pytest.raises(ParseError):
        verification.verify_collection_image(b"img", "image/jpeg", "plastic", 5.0, client=client)


def test_empty_answer_is_a_parse_error():
    with pytest.raises(ParseError):
        verification.analyze_report_image(b"img", "image/jpeg", client=fake_client(""))


def test_model_failure_is_a_verification_error():
    client = fake_client(error=openai.OpenAIError("quota exceeded"))
    with pytest.raises(VerificationError):
        verification.analyze_report_image(b"img", "image/jpeg", client=client)
    assert len(client.sent) == 1


def test_missing_image_is_rejected():
    with pytest.raises(VerificationError):
        verification.analyze_report_image(b"", "image/jpeg", client=fake_client("{}"))


def test_unconfigured_key(monkeypatch):
    monkeypatch.setattr(config, "AI_API_KEY", None)
    with pytest.raises(VerificationError):
        verification.get_client()
