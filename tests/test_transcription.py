import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from dispatch_call_simulator.errors import MicrophoneUnavailableError, ReconnectExhaustedError
from dispatch_call_simulator.models import SpeechStarted, StreamError, TranscriptEvent
from dispatch_call_simulator.transcription import ConnectionState, TranscriptionStreamManager, parse_message

from .fakes import FakeConnector, RecordingSleep, ScriptedSource, fast_config, results, wait_until


def make_manager(log=None, **overrides):
    connector = FakeConnector(log=log)
    sleep = RecordingSleep()
    manager = TranscriptionStreamManager(fast_config(**overrides), connector=connector, sleep=sleep)
    events = []
    manager.on_event(events.append)
    return manager, connector, sleep, events


def test_parse_message_formats():
    flat = parse_message('{"transcript": "hello", "is_final": true}')
    assert isinstance(flat, TranscriptEvent) and flat.text == "hello" and flat.is_final
    event = parse_message('{"type": "Results", "is_final": false, "channel": {"alternatives": [{"transcript": " help "}]}}')
    assert isinstance(event, TranscriptEvent) and event.text == "help" and not event.is_final
    assert isinstance(parse_message('{"type": "SpeechStarted"}'), SpeechStarted)
    assert parse_message('{"type": "UtteranceEnd"}') is None
    assert parse_message('{"type": "Metadata", "request_id": "x"}') is None
    assert parse_message('{"type": "Results", "channel": {"alternatives": [{"transcript": ""}]}}') is None
    assert parse_message("not json") is None
    assert parse_message(b"\x00\x01") is None


def test_start_connects_before_opening_microphone():
    async def runner():
        log = []
        manager, connector, _, _ = make_manager(log=log)
        source = ScriptedSource(log=log)
        await manager.start(source)
        assert log == ["connected", "source started"]
        assert manager.state is ConnectionState.CONNECTED

        url, kwargs = connector.calls[0]
        query = parse_qs(urlparse(url).query)
        assert url.startswith("wss://api.deepgram.com/v1/listen?")
        assert query["encoding"] == ["linear16"]
        assert query["sample_rate"] == ["16000"]
        assert query["channels"] == ["1"]
        assert query["interim_results"] == ["true"]
        assert query["punctuate"] == ["true"]
        assert kwargs["additional_headers"] is None
        await manager.stop()

    asyncio.run(runner())


def test_api_key_sent_as_token_header():
    async def runner():
        manager, connector, _, _ = make_manager(stt_api_key="secret")
        await manager.start(ScriptedSource())
        assert connector.calls[0][1]["additional_headers"] == {"Authorization": "Token secret"}
        await manager.stop()

    asyncio.run(runner())


def test_frames_forwarded_in_capture_order_and_events_emitted():
    async def runner():
        manager, connector, _, events = make_manager()
        source = ScriptedSource()
        await manager.start(source)
        for i in range(5):
            source.push(bytes([i]) * 4)
        ws = connector.latest
        await wait_until(lambda: len(ws.audio) == 5)
        assert ws.audio == [bytes([i]) * 4 for i in range(5)]

        ws.feed({"type": "SpeechStarted"})
        ws.feed(results("nine one", False))
        ws.feed(results("", False))
        ws.feed({"type": "UtteranceEnd"})
        ws.feed(results("Nine one one, what's your emergency?", True))
        await wait_until(lambda: len(events) == 3)
        assert isinstance(events[0], SpeechStarted)
        assert (events[1].text, events[1].is_final) == ("nine one", False)
        assert (events[2].text, events[2].is_final) == ("Nine one one, what's your emergency?", True)
        await manager.stop()

    asyncio.run(runner())


def test_pause_keeps_connection_and_resume_forwards_again():
    async def runner():
        manager, connector, _, _ = make_manager()
        source = ScriptedSource()
        await manager.start(source)
        ws = connector.latest
        source.push(b"a")
        await wait_until(lambda: ws.audio == [b"a"])

        manager.pause()
        assert manager.paused and source.paused
        source.push(b"b")
        await wait_until(lambda: {"type": "KeepAlive"} in ws.control)
        assert ws.audio == [b"a"]
        assert not ws.closed
        assert manager.state is ConnectionState.CONNECTED

        manager.resume()
        source.push(b"c")
        await wait_until(lambda: ws.audio == [b"a", b"c"])
        assert len(connector.calls) == 1
        await manager.stop()

    asyncio.run(runner())


def test_stop_sends_end_of_stream_and_never_reconnects():
    async def runner():
        manager, connector, sleep, events = make_manager()
        source = ScriptedSource()
        await manager.start(source)
        ws = connector.latest
        await manager.stop()
        assert ws.control[-1] == {"type": "CloseStream"}
        assert ws.close_code == 1000
        assert source.closed
        assert manager.state is ConnectionState.DISCONNECTED
        await asyncio.sleep(0.01)
        assert len(connector.calls) == 1
        assert sleep.delays == []
        assert events == []
        await manager.stop()

    asyncio.run(runner())


def test_abnormal_close_reconnects_after_backoff_and_resumes_forwarding():
    async def runner():
        manager, connector, sleep, events = make_manager()
        source = ScriptedSource()
        await manager.start(source)
        first = connector.latest
        first.drop()
        await wait_until(lambda: len(connector.sockets) == 2)
        assert sleep.delays == [1.0]
        await wait_until(lambda: manager.state is ConnectionState.CONNECTED)
        assert manager.reconnect_attempts == 0

        source.push(b"after")
        second = connector.latest
        await wait_until(lambda: second.audio == [b"after"])
        assert b"after" not in first.audio
        second.feed(results("still there?", True))
        await wait_until(lambda: events)
        assert events[0].text == "still there?"
        await manager.stop()

    asyncio.run(runner())


def test_frame_sent_during_drop_arrives_on_new_socket():
    async def runner():
        manager, connector, _, _ = make_manager()
        source = ScriptedSource()
        await manager.start(source)
        first = connector.latest
        source.push(b"1")
        await wait_until(lambda: first.audio == [b"1"])
        first.drop()
        source.push(b"2")
        source.push(b"3")
        await wait_until(lambda: len(connector.sockets) == 2 and connector.latest.audio == [b"2", b"3"])
        assert first.audio == [b"1"]
        await manager.stop()

    asyncio.run(runner())


def test_server_initiated_clean_close_also_reconnects():
    async def runner():
        manager, connector, sleep, _ = make_manager()
        await manager.start(ScriptedSource())
        connector.latest.server_close()
        await wait_until(lambda: len(connector.sockets) == 2)
        assert sleep.delays == [1.0]
        await manager.stop()

    asyncio.run(runner())


def test_reconnect_gives_up_after_three_attempts():
    async def runner():
        manager, connector, sleep, events = make_manager()
        await manager.start(ScriptedSource())
        connector.fail_next = 99
        connector.latest.drop()
        await wait_until(lambda: events)
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert len(connector.calls) == 1 + 3
        assert all(later >= 2 * earlier for earlier, later in zip(sleep.delays, sleep.delays[1:]))
        error = events[0]
        assert isinstance(error, StreamError) and error.terminal
        assert isinstance(error.error, ReconnectExhaustedError)
        assert error.error.attempts == 3
        assert manager.state is ConnectionState.DISCONNECTED
        await manager.stop()

    asyncio.run(runner())


def test_attempt_counter_resets_after_successful_reconnect():
    async def runner():
        manager, connector, sleep, events = make_manager()
        await manager.start(ScriptedSource())
        connector.fail_next = 1
        connector.latest.drop()
        await wait_until(lambda: len(connector.sockets) == 2)
        assert sleep.delays == [1.0, 2.0]
        connector.latest.drop()
        await wait_until(lambda: len(connector.sockets) == 3)
        assert sleep.delays == [1.0, 2.0, 1.0]
        assert events == []
        await manager.stop()

    asyncio.run(runner())


def test_unreachable_service_fails_start_without_opening_microphone():
    async def runner():
        manager, connector, sleep, _ = make_manager()
        connector.fail_next = 99
        source = ScriptedSource()
        with pytest.raises(ReconnectExhaustedError):
            await manager.start(source)
        assert not source.started
        assert source.closed
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert manager.state is ConnectionState.DISCONNECTED

    asyncio.run(runner())


def test_microphone_denied_closes_connection():
    async def runner():
        manager, connector, _, _ = make_manager()
        with pytest.raises(MicrophoneUnavailableError):
            await manager.start(ScriptedSource(fail=True))
        ws = connector.latest
        assert ws.closed and ws.close_code == 1000
        assert manager.state is ConnectionState.DISCONNECTED

    asyncio.run(runner())
