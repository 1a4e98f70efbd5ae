import asyncio

import pytest

from dispatch_call_simulator.config import Config
from dispatch_call_simulator.errors import GenerationError, GenerationInProgressError
from dispatch_call_simulator.generation import ResponseGenerator
from dispatch_call_simulator.models import ConversationTurn, Role, SessionContext
from dispatch_call_simulator.scenario import ScenarioParameters

from .fakes import ScriptedChatClient, wait_until

ADDRESS = "125 Main Street"
CALLBACK = "443-555-1234"


def make_context(history=(), cooperation=50):
    scenario = ScenarioParameters(scenario="Kitchen fire, husband burned", cooperation_level=cooperation)
    return SessionContext(scenario=scenario, address=ADDRESS, callback_number=CALLBACK, history=tuple(history))


async def collect(response):
    return [item async for item in response]


def test_sentences_numbered_in_emission_order():
    async def runner():
        client = ScriptedChatClient([["My kitchen ", "is on fire! ", "My husband ", "is burned. ", "Hurry"]])
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("911, what's your emergency?", make_context())
        items = await collect(response)
        assert [i.sequence for i in items] == [1, 2, 3]
        assert [i.text for i in items] == ["My kitchen is on fire!", "My husband is burned.", "Hurry"]
        assert response.text == "My kitchen is on fire! My husband is burned. Hurry"
        assert not response.regenerated
        assert client.chat_calls == []

    asyncio.run(runner())


def test_sequence_keeps_increasing_across_turns():
    async def runner():
        client = ScriptedChatClient([["One. ", "Two."], ["Three."]])
        generator = ResponseGenerator(client, Config())
        first = await collect(generator.generate_response("Hello", make_context()))
        second = await collect(generator.generate_response("Go on", make_context()))
        assert [i.sequence for i in first + second] == [1, 2, 3]

    asyncio.run(runner())


def test_prompt_restates_address_callback_and_history():
    async def runner():
        client = ScriptedChatClient([["Okay."]])
        generator = ResponseGenerator(client, Config())
        history = [
            ConversationTurn(Role.DISPATCHER, "911, what's your emergency?"),
            ConversationTurn(Role.CALLER, "There's a fire!"),
        ]
        await collect(generator.generate_response("What's the address?", make_context(history)))
        messages = client.stream_calls[0]
        assert messages[0]["role"] == "system"
        assert ADDRESS in messages[0]["content"]
        assert CALLBACK in messages[0]["content"]
        assert "The area code is 443" in messages[0]["content"]
        assert messages[1:] == [
            {"role": "user", "content": "911, what's your emergency?"},
            {"role": "assistant", "content": "There's a fire!"},
            {"role": "user", "content": "What's the address?"},
        ]
        assert client.options[0]["num_predict"] == 60
        assert client.options[0]["temperature"] == 0.8

    asyncio.run(runner())


def test_stage_directions_removed_and_address_pinned():
    async def runner():
        client = ScriptedChatClient([["[crying] We're at ", "42 Elm Street! ", "*sobs* Please."]])
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Where are you?", make_context())
        items = await collect(response)
        assert [i.text for i in items] == ["We're at 125 Main Street!", "Please."]

    asyncio.run(runner())


def test_direction_only_sentence_is_dropped():
    async def runner():
        client = ScriptedChatClient([["[sobbing uncontrollably]. ", "Help me."]])
        generator = ResponseGenerator(client, Config())
        items = await collect(generator.generate_response("Ma'am?", make_context()))
        assert [(i.sequence, i.text) for i in items] == [(1, "Help me.")]

    asyncio.run(runner())


def test_character_break_stops_stream_and_regenerates_once():
    async def runner():
        client = ScriptedChatClient(
            [["Please hurry! ", "What's your emergency? ", "Never emitted."]],
            retry_reply="He has a gun. Send police!",
        )
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Hello?", make_context())
        items = await collect(response)
        assert [i.text for i in items] == ["Please hurry!", "He has a gun.", "Send police!"]
        assert [i.sequence for i in items] == [1, 2, 3]
        assert response.regenerated and not response.fell_back
        assert len(client.chat_calls) == 1
        retry_system = client.chat_calls[0][0]["content"]
        assert "NOT THE 911 DISPATCHER" in retry_system
        assert ADDRESS in retry_system

    asyncio.run(runner())


def test_retry_that_breaks_character_falls_back():
    async def runner():
        client = ScriptedChatClient([["How can I help you today?"]], retry_reply="How can I help you?")
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Hello?", make_context())
        items = await collect(response)
        assert [i.text for i in items] == ["Please help me!", "I need police right now!"]
        assert response.fell_back
        assert len(client.chat_calls) == 1

    asyncio.run(runner())


def test_empty_reply_regenerates():
    async def runner():
        client = ScriptedChatClient([[]], retry_reply="Hurry please.")
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Hello?", make_context())
        items = await collect(response)
        assert [i.text for i in items] == ["Hurry please."]
        assert response.regenerated

    asyncio.run(runner())


def test_stream_failure_before_any_sentence_regenerates():
    async def runner():
        client = ScriptedChatClient([["Half a sen", GenerationError("connection reset")]], retry_reply="Help!")
        generator = ResponseGenerator(client, Config())
        items = await collect(generator.generate_response("Hello?", make_context()))
        assert [i.text for i in items] == ["Help!"]

    asyncio.run(runner())


def test_stream_failure_after_sentence_keeps_what_was_said():
    async def runner():
        client = ScriptedChatClient([["First thing. ", GenerationError("connection reset")]])
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Hello?", make_context())
        items = await collect(response)
        assert [i.text for i in items] == ["First thing."]
        assert client.chat_calls == []
        assert not generator.busy

    asyncio.run(runner())


def test_failed_retry_request_falls_back():
    async def runner():
        client = ScriptedChatClient([[]], retry_reply=GenerationError("model not found"))
        generator = ResponseGenerator(client, Config(fallback_utterance="Send help!"))
        response = generator.generate_response("Hello?", make_context())
        items = await collect(response)
        assert [i.text for i in items] == ["Send help!"]
        assert response.fell_back

    asyncio.run(runner())


def test_silence_marker_passes_through():
    async def runner():
        client = ScriptedChatClient([["..."]])
        generator = ResponseGenerator(client, Config())
        items = await collect(generator.generate_response("Stay with me.", make_context()))
        assert len(items) == 1 and items[0].is_silence

    asyncio.run(runner())


def test_only_one_reply_in_flight():
    async def runner():
        gate = asyncio.Event()
        client = ScriptedChatClient([["First. ", gate, "Second."]])
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Hello?", make_context())
        task = asyncio.create_task(collect(response))
        await wait_until(lambda: generator.busy)
        with pytest.raises(GenerationInProgressError):
            generator.generate_response("Are you there?", make_context())
        gate.set()
        items = await task
        assert [i.text for i in items] == ["First.", "Second."]
        assert not generator.busy

    asyncio.run(runner())


def test_closing_early_releases_generator():
    async def runner():
        gate = asyncio.Event()
        client = ScriptedChatClient([["First. ", gate, "Second."]])
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Hello?", make_context())
        async for item in response:
            assert item.text == "First."
            break
        await response.aclose()
        assert not generator.busy
        assert client.active == 0
        assert response.text == "First."

    asyncio.run(runner())


def test_stage_direction_spanning_sentence_end_is_removed():
    async def runner():
        client = ScriptedChatClient([["*breathing heavily... ", "sobbing* ", "Help me! ", "[crying. softly] Hurry."]])
        generator = ResponseGenerator(client, Config())
        response = generator.generate_response("Ma'am, are you there?", make_context())
        items = await collect(response)
        assert [i.text for i in items] == ["Help me!", "Hurry."]
        assert not any(mark in response.text for mark in "*[]")

    asyncio.run(runner())
