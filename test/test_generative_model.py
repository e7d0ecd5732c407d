import asyncio
from types import SimpleNamespace

import pytest
from google.genai import errors as genai_errors

from voicepilot.app.dispatch_engine import APOLOGY_MESSAGE, DispatchEngine
from voicepilot.app.generative_model import (
    FunctionCallingModel,
    GenerationSession,
    SessionFactory,
    parse_response,
)
from voicepilot.app.tool_registry import build_default_registry
from voicepilot.models.responses import DispatchOutcome, FunctionCall, ImageInput, TextMessage
from voicepilot.utils.exceptions import (
    InitializationError,
    MalformedResponseError,
    SessionError,
    TransportError,
)


def response_with(*parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


def call_part(name, args=None):
    return SimpleNamespace(function_call=SimpleNamespace(name=name, args=args), text=None)


def text_part(text):
    return SimpleNamespace(function_call=None, text=text)


class FakeModels:
    def __init__(self, response=None, chunks=(), error=None):
        self.response = response
        self.chunks = list(chunks)
        self.error = error
        self.requests = []

    def generate_content(self, model, contents, config):
        self.requests.append((model, contents, config))
        if self.error:
            raise self.error
        return self.response

    def generate_content_stream(self, model, contents, config):
        self.requests.append((model, contents, config))
        if self.error:
            raise self.error
        return iter(SimpleNamespace(text=c) for c in self.chunks)


def fake_client(**kwargs):
    return SimpleNamespace(models=FakeModels(**kwargs))


# ----------------------------------------------------------------------------
# parse_response
# ----------------------------------------------------------------------------

def test_function_call_part():
    parsed = parse_response(response_with(call_part("getWeather", {"city": "Paris"})))
    assert parsed == FunctionCall("getWeather", {"city": "Paris"})


def test_function_call_without_args():
    assert parse_response(response_with(call_part("getTime"))) == FunctionCall("getTime", {})


def test_text_part():
    assert parse_response(response_with(text_part("Hello there"))) == TextMessage("Hello there")


def test_only_first_part_is_interpreted():
    parsed = parse_response(response_with(text_part("first"), call_part("getTime")))
    assert parsed == TextMessage("first")


@pytest.mark.parametrize("response", [
    SimpleNamespace(candidates=[]),
    response_with(),
    response_with(call_part("")),
    response_with(call_part("getWeather", ["Paris"])),
    response_with(SimpleNamespace(function_call=None, text=None)),
])
def test_malformed_responses(response):
    with pytest.raises(MalformedResponseError):
        parse_response(response)


# ----------------------------------------------------------------------------
# FunctionCallingModel
# ----------------------------------------------------------------------------

def test_send_message_uses_registry_tools():
    client = fake_client(response=response_with(call_part("getTime")))
    model = FunctionCallingModel(build_default_registry(), client=client, model_id="test-model")

    assert model.send_message("what time is it") == FunctionCall("getTime", {})

    model_id, contents, config = client.models.requests[0]
    assert model_id == "test-model"
    assert contents == "what time is it"
    assert len(config.tools[0].function_declarations) == 5
    assert config.max_output_tokens == 1024


def test_transport_failures_are_wrapped():
    client = fake_client(error=ConnectionError("network down"))
    model = FunctionCallingModel(build_default_registry(), client=client)
    with pytest.raises(TransportError):
        model.send_message("hi")


def rate_limited():
    return genai_errors.ClientError(
        429, {"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}}
    )


def test_rate_limit_is_transport_error():
    model = FunctionCallingModel(build_default_registry(), client=fake_client(error=rate_limited()))
    with pytest.raises(TransportError):
        model.send_message("what time is it")


def test_rate_limit_apologizes_instead_of_asking_to_rephrase(synthesizer):
    model = FunctionCallingModel(build_default_registry(), client=fake_client(error=rate_limited()))
    engine = DispatchEngine(model, session_factory=None, info_service=None, synthesizer=synthesizer)

    result = asyncio.run(engine.dispatch("what time is it"))

    assert result.outcome == DispatchOutcome.FAILED
    assert result.message == APOLOGY_MESSAGE
    assert engine.state.snapshot.notice == APOLOGY_MESSAGE


def test_missing_api_key_is_initialization_error():
    with pytest.raises(InitializationError):
        FunctionCallingModel(build_default_registry(), api_key=None)


# ----------------------------------------------------------------------------
# GenerationSession
# ----------------------------------------------------------------------------

def test_stream_yields_chunks_then_closes():
    client = fake_client(chunks=["A cat ", "", "on a mat"])
    session = GenerationSession(client, "vision-model")
    session.add_query("what is this in 20 words")
    session.add_image(ImageInput(b"\x89PNG"))

    assert list(session.stream()) == ["A cat ", "on a mat"]
    assert session.closed
    _, contents, _ = client.models.requests[0]
    assert contents[-1] == "what is this in 20 words"
    assert len(contents) == 2


def test_second_image_is_rejected():
    session = GenerationSession(fake_client(), "vision-model")
    session.add_image(ImageInput(b"one"))
    with pytest.raises(SessionError):
        session.add_image(ImageInput(b"two"))


def test_closed_session_cannot_be_reused():
    session = GenerationSession(fake_client(chunks=["x"]), "vision-model")
    session.add_query("q")
    list(session.stream())

    with pytest.raises(SessionError):
        session.add_query("again")
    with pytest.raises(SessionError):
        list(session.stream())


def test_cancel_stops_the_stream():
    session = GenerationSession(fake_client(chunks=["a", "b", "c"]), "vision-model")
    session.add_query("q")
    stream = session.stream()

    assert next(stream) == "a"
    session.cancel()
    session.cancel()
    assert list(stream) == []
    assert session.closed


def test_stream_failure_is_transport_error():
    session = GenerationSession(fake_client(error=RuntimeError("quota")), "vision-model")
    session.add_query("q")
    with pytest.raises(TransportError):
        list(session.stream())
    assert session.closed


def test_factory_builds_fresh_sessions():
    factory = SessionFactory(client=fake_client(), model_id="vision-model", temperature=0.5)
    first, second = factory(), factory()
    assert first is not second
    assert first.model_id == "vision-model"
