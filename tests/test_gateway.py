"""Tests for the gateway core.

Covers:
  - Gateway types and DTOs
  - Message Normalizer
  - Retry Policy
  - Concurrency-bounded Task Queue
  - Streaming envelope protocol
  - Gemini upstream adapter (mocked HTTP)
"""

from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from stream_gateway.gateway.errors import (
    ClientInputError,
    DecodeError,
    RateLimitError,
    ServiceOverloadedError,
    UpstreamError,
    UpstreamFailure,
    error_from_status,
)
from stream_gateway.gateway.normalizer import build_request, classify_raw_input, normalize_turns
from stream_gateway.gateway.protocol import END_MARKER, StreamDecoder, decode_body, encode_terminal
from stream_gateway.gateway.queue_manager import TaskQueue
from stream_gateway.gateway.retry import RetryPolicy
from stream_gateway.gateway.types import (
    GatewayResult,
    GenerationRequest,
    SingleTurnInput,
    TaskState,
    TextInput,
    Turn,
    TurnListInput,
    inline_part,
    text_part,
)
from stream_gateway.gateway.upstream import GeminiUpstream, chunk_text, merge_stream_responses


class _SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ==========================================================================
# Test: Gateway Types
# ==========================================================================


class TestGatewayTypes:
    def test_turn_defaults_to_user(self):
        turn = Turn.from_dict({"parts": [{"text": "hi"}]})
        assert turn.role == "user"
        assert turn.parts == ({"text": "hi"},)

    def test_turn_to_dict(self):
        turn = Turn(role="model", parts=(text_part("ok"),))
        assert turn.to_dict() == {"role": "model", "parts": [{"text": "ok"}]}

    def test_generation_request_is_immutable(self):
        req = build_request("hello")
        with pytest.raises(AttributeError):
            req.model_name = "other"  # type: ignore[misc]

    def test_wants_image_output(self):
        assert build_request("x", config={"responseModalities": ["IMAGE"]}).wants_image_output
        assert build_request("x", config={"responseModalities": ["text", "image"]}).wants_image_output
        assert not build_request("x", config={"responseMimeType": "application/json"}).wants_image_output
        assert not build_request("x").wants_image_output

    def test_to_payload(self):
        req = build_request("hi", model_name="gemini-2.0-flash", config={"temperature": 0.2}, system_instruction="Be brief")
        payload = req.to_payload()
        assert payload == {
            "modelName": "gemini-2.0-flash",
            "contents": [{"role": "user", "parts": [{"text": "hi"}]}],
            "config": {"temperature": 0.2},
            "systemInstruction": "Be brief",
        }

    def test_to_payload_omits_empty_optionals(self):
        payload = build_request("hi").to_payload()
        assert "config" not in payload
        assert "systemInstruction" not in payload

    def test_result_total_tokens(self):
        result = GatewayResult("x", {"usageMetadata": {"totalTokenCount": 42}})
        assert result.total_tokens == 42
        assert GatewayResult().total_tokens == 0

    def test_result_first_inline_image(self):
        response = {
            "candidates": [
                {"content": {"parts": [{"text": "here"}, inline_part("image/jpeg", "AAAA")]}},
            ]
        }
        assert GatewayResult("", response).first_inline_image() == "data:image/jpeg;base64,AAAA"
        assert GatewayResult("", {}).first_inline_image() is None

    def test_result_dict_round_trip(self):
        result = GatewayResult("text", {"a": 1}, complete=False)
        restored = GatewayResult.from_dict(result.to_dict())
        assert restored == result


# ==========================================================================
# Test: Message Normalizer
# ==========================================================================


class TestNormalizer:
    def test_text_becomes_single_user_turn(self):
        turns = normalize_turns("2+2?")
        assert turns == [Turn(role="user", parts=({"text": "2+2?"},))]

    def test_single_object_is_wrapped(self):
        contents = {"parts": [inline_part("image/png", "abc"), text_part("edit this")]}
        turns = normalize_turns(contents)
        assert len(turns) == 1
        assert turns[0].role == "user"
        assert turns[0].parts[1] == {"text": "edit this"}

    def test_list_is_passed_through_in_order(self):
        contents = [
            {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [{"text": "hello"}]},
            {"parts": [{"text": "how are you?"}]},
        ]
        turns = normalize_turns(contents)
        assert [t.role for t in turns] == ["user", "model", "user"]
        assert [t.parts[0]["text"] for t in turns] == ["hi", "hello", "how are you?"]

    def test_always_non_empty_for_all_shapes(self):
        for value in ("text", {"parts": [{"text": "x"}]}, [{"parts": [{"text": "x"}]}]):
            turns = normalize_turns(value)
            assert turns
            assert all(t.role == "user" for t in turns)

    def test_idempotent_on_turns(self):
        turns = normalize_turns("hello")
        assert normalize_turns(turns) == turns
        assert normalize_turns(turns[0]) == turns

    def test_malformed_parts_are_forwarded(self):
        turns = normalize_turns({"parts": [{"bogus": True}]})
        assert turns[0].parts == ({"bogus": True},)

    def test_classify_tagged_union(self):
        assert isinstance(classify_raw_input("x"), TextInput)
        assert isinstance(classify_raw_input({"parts": []}), SingleTurnInput)
        assert isinstance(classify_raw_input([]), TurnListInput)

    def test_unsupported_shapes_raise(self):
        with pytest.raises(ClientInputError):
            normalize_turns(42)
        with pytest.raises(ClientInputError):
            normalize_turns({"text": "no parts"})
        with pytest.raises(ClientInputError):
            normalize_turns(["plain string entry"])

    def test_build_request_rejects_empty_list(self):
        with pytest.raises(ClientInputError, match="Missing contents"):
            build_request([])

    def test_build_request_defaults(self):
        req = build_request("hi")
        assert isinstance(req, GenerationRequest)
        assert req.model_name == "gemini-2.5-flash"
        assert req.generation_config == {}
        assert req.system_instruction is None


# ==========================================================================
# Test: Error taxonomy
# ==========================================================================


class TestErrors:
    def test_error_from_status(self):
        assert isinstance(error_from_status(429, "x"), RateLimitError)
        assert isinstance(error_from_status(503, "x"), ServiceOverloadedError)
        failure = error_from_status(400, "bad model")
        assert isinstance(failure, UpstreamFailure)
        assert failure.status_code == 400

    def test_transient_is_a_field_comparison(self):
        # Message text mentioning 429 does not make a failure transient
        assert not UpstreamFailure("upstream said 429", status_code=500).is_transient
        assert UpstreamError("quota", status_code=429).is_transient


# ==========================================================================
# Test: Retry Policy
# ==========================================================================


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleeper = _SleepRecorder()
        policy = RetryPolicy(sleep=sleeper)

        async def op():
            return "ok"

        assert await policy.run(op) == "ok"
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_always_transient_exhausts_budget(self):
        sleeper = _SleepRecorder()
        policy = RetryPolicy(max_retries=3, base_delay=1.0, sleep=sleeper)
        raised: list[Exception] = []

        async def op():
            exc = RateLimitError(f"429 attempt {len(raised) + 1}")
            raised.append(exc)
            raise exc

        with pytest.raises(RateLimitError) as exc_info:
            await policy.run(op)

        assert len(raised) == 4
        assert exc_info.value is raised[-1]
        assert sleeper.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_retryable_attempted_once(self):
        sleeper = _SleepRecorder()
        policy = RetryPolicy(sleep=sleeper)
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise UpstreamFailure("invalid model", status_code=404)

        with pytest.raises(UpstreamFailure):
            await policy.run(op)
        assert calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_plain_exceptions_are_not_retried(self):
        policy = RetryPolicy(sleep=_SleepRecorder())
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await policy.run(op)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        sleeper = _SleepRecorder()
        retries = []
        policy = RetryPolicy(base_delay=0.5, sleep=sleeper)
        outcomes = [ServiceOverloadedError(), RateLimitError(), "done"]

        async def op():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = await policy.run(op, on_retry=lambda attempt, exc: retries.append((attempt, exc.status_code)))
        assert result == "done"
        assert sleeper.delays == [0.5, 1.0]
        assert [(a.attempt_number, a.delay_before_attempt, s) for a, s in retries] == [
            (2, 0.5, 503),
            (3, 1.0, 429),
        ]

    @pytest.mark.asyncio
    async def test_observed_delays_double(self):
        base = 0.05
        policy = RetryPolicy(max_retries=2, base_delay=base)
        starts: list[float] = []

        async def op():
            starts.append(time.monotonic())
            raise RateLimitError()

        with pytest.raises(RateLimitError):
            await policy.run(op)

        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert len(gaps) == 2
        for gap, expected in zip(gaps, [base, base * 2]):
            assert expected - 0.01 <= gap < expected + 0.1

    def test_calculate_backoff(self):
        assert RetryPolicy.calculate_backoff(0) == 1.0
        assert RetryPolicy.calculate_backoff(1) == 2.0
        assert RetryPolicy.calculate_backoff(2) == 4.0
        assert RetryPolicy.calculate_backoff(3, base_delay=0.5) == 4.0

    def test_zero_retries_allowed(self):
        assert RetryPolicy(max_retries=0).max_retries == 0
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)


# ==========================================================================
# Test: Task Queue
# ==========================================================================


class TestTaskQueue:
    @pytest.mark.asyncio
    async def test_result_passthrough(self):
        queue = TaskQueue()

        async def op():
            return {"a": 1}

        assert await queue.add(op) == {"a": 1}

    @pytest.mark.asyncio
    async def test_never_exceeds_cap(self):
        queue = TaskQueue(max_concurrent=2)
        intervals: list[tuple[float, float]] = []
        live = 0
        peak = 0

        async def op(i: int):
            nonlocal live, peak
            live += 1
            peak = max(peak, live)
            start = time.monotonic()
            await asyncio.sleep(0.01 * (i % 3 + 1))
            intervals.append((start, time.monotonic()))
            live -= 1
            return i

        results = await asyncio.gather(*(queue.add(lambda i=i: op(i)) for i in range(7)))

        assert results == list(range(7))
        assert peak == 2
        for start, _ in intervals:
            open_at_start = sum(1 for a, b in intervals if a <= start < b)
            assert open_at_start <= 2

    @pytest.mark.asyncio
    async def test_fifo_with_single_slot(self):
        queue = TaskQueue(max_concurrent=1)
        started: list[tuple[str, float]] = []

        def make(name: str):
            async def op():
                started.append((name, time.monotonic()))
                await asyncio.sleep(0.005)
                return name

            return op

        tasks = [asyncio.create_task(queue.add(make(name))) for name in ("T1", "T2", "T3")]
        assert await asyncio.gather(*tasks) == ["T1", "T2", "T3"]
        assert [name for name, _ in started] == ["T1", "T2", "T3"]
        stamps = [ts for _, ts in started]
        assert stamps == sorted(stamps)

    @pytest.mark.asyncio
    async def test_failure_does_not_block_siblings(self):
        queue = TaskQueue(max_concurrent=1)

        async def failing():
            raise ValueError("boom")

        async def ok():
            return "ok"

        results = await asyncio.gather(queue.add(failing), queue.add(ok), return_exceptions=True)
        assert isinstance(results[0], ValueError)
        assert results[1] == "ok"
        assert queue.get_stats()["active"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_operation_settles_caller(self):
        queue = TaskQueue(max_concurrent=1)

        async def cancelled():
            raise asyncio.CancelledError()

        async def ok():
            return "ok"

        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(queue.add(cancelled), timeout=1.0)

        assert await asyncio.wait_for(queue.add(ok), timeout=1.0) == "ok"
        assert queue.get_stats()["active"] == 0
        assert queue.get_stats()["completed"] == 2

    @pytest.mark.asyncio
    async def test_pending_and_active_counts(self):
        queue = TaskQueue(max_concurrent=1)
        release = asyncio.Event()

        async def op():
            await release.wait()
            return True

        tasks = [asyncio.create_task(queue.add(op)) for _ in range(3)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert queue.active_count == 1
        assert queue.pending_count == 2

        release.set()
        await asyncio.gather(*tasks)
        assert queue.get_stats() == {"active": 0, "pending": 0, "completed": 3, "max_concurrent": 1}

    @pytest.mark.asyncio
    async def test_task_states_recorded(self):
        queue = TaskQueue(max_concurrent=1)
        seen = []

        async def op():
            return 1

        original_admit = queue._admit

        def spy_admit():
            seen.extend(t.state for t in queue._pending)
            original_admit()

        queue._admit = spy_admit
        await queue.add(op)
        assert seen == [TaskState.PENDING]

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            TaskQueue(max_concurrent=0)


# ==========================================================================
# Test: Streaming envelope protocol
# ==========================================================================


class TestProtocol:
    def test_round_trip(self):
        body = "Hello " + "World" + "\n" + END_MARKER + json.dumps({"response": {"a": 1}, "text": "Hello World"})
        result = decode_body(body)
        assert result.aggregated_text == "Hello World"
        assert result.structured_response == {"a": 1}
        assert result.complete is True

    def test_encode_terminal(self):
        block = encode_terminal({"a": 1}, "Hello")
        assert block.startswith("\n" + END_MARKER)
        assert json.loads(block[len(END_MARKER) + 1 :]) == {"response": {"a": 1}, "text": "Hello"}

    def test_fallback_plain_text(self, caplog):
        result = decode_body("partial output only")
        assert result.aggregated_text == "partial output only"
        assert result.structured_response == {}
        assert result.complete is False
        assert "missing end marker" in caplog.text

    def test_fallback_error_object_raises(self):
        with pytest.raises(UpstreamFailure, match="^boom$"):
            decode_body('{"error":"boom"}')

    def test_fallback_json_without_error_is_text(self):
        result = decode_body('{"answer": 4}')
        assert result.aggregated_text == '{"answer": 4}'
        assert result.complete is False

    def test_malformed_envelope_raises(self):
        with pytest.raises(DecodeError):
            decode_body("text\n" + END_MARKER + "{not json")

    def test_non_object_envelope_raises(self):
        with pytest.raises(DecodeError):
            decode_body("\n" + END_MARKER + "[1, 2]")

    def test_image_envelope_has_empty_text(self):
        result = decode_body(encode_terminal({"candidates": []}, ""))
        assert result.aggregated_text == ""
        assert result.structured_response == {"candidates": []}


class TestStreamDecoder:
    def test_marker_split_across_pieces(self):
        decoder = StreamDecoder()
        pieces = [
            "Hello ",
            "World\n__END_",
            'GEMINI__{"response": {"a": 1}, "text": "Hello World"}',
        ]
        visible = [decoder.feed(p) for p in pieces]
        visible.append(decoder.flush())

        assert "".join(visible) == "Hello World"
        result = decoder.result()
        assert result.aggregated_text == "Hello World"
        assert result.structured_response == {"a": 1}

    def test_nothing_after_marker_is_visible(self):
        decoder = StreamDecoder()
        decoder.feed("4" + encode_terminal({}, "4")[:20])
        assert decoder.feed(encode_terminal({}, "4")[20:]) == ""

    def test_flush_releases_tail_without_marker(self):
        decoder = StreamDecoder()
        first = decoder.feed("partial output only")
        rest = decoder.flush()
        assert first + rest == "partial output only"
        assert decoder.result().complete is False

    def test_image_body_renders_nothing(self):
        decoder = StreamDecoder()
        assert decoder.feed(encode_terminal({"x": 1}, "")) == ""
        assert decoder.flush() == ""


# ==========================================================================
# Test: Gemini upstream adapter (mocked HTTP)
# ==========================================================================


class TestGeminiUpstream:
    def test_chunk_text_skips_non_text_parts(self):
        chunk = {
            "candidates": [
                {"content": {"parts": [{"text": "a"}, inline_part("image/png", "zz"), {"text": "b"}]}},
            ]
        }
        assert chunk_text(chunk) == "ab"
        assert chunk_text({}) == ""

    def test_merge_stream_responses(self):
        chunks = [
            {"candidates": [{"content": {"role": "model", "parts": [{"text": "Hel"}]}}], "modelVersion": "m"},
            {"candidates": [{"content": {"role": "model", "parts": [{"text": "lo"}]}}]},
            {
                "candidates": [{"content": {"role": "model", "parts": []}, "finishReason": "STOP"}],
                "usageMetadata": {"totalTokenCount": 9},
            },
        ]
        merged = merge_stream_responses(chunks)
        assert merged["candidates"][0]["content"] == {"role": "model", "parts": [{"text": "Hello"}]}
        assert merged["candidates"][0]["finishReason"] == "STOP"
        assert merged["usageMetadata"] == {"totalTokenCount": 9}
        assert merged["modelVersion"] == "m"
        assert merge_stream_responses([]) == {}

    def test_build_payload_wraps_string_system_instruction(self):
        req = build_request("hi", config={"temperature": 0}, system_instruction="Be brief")
        payload = GeminiUpstream.build_payload(req)
        assert payload["systemInstruction"] == {"parts": [{"text": "Be brief"}]}
        assert payload["generationConfig"] == {"temperature": 0}
        assert payload["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]

    @pytest.mark.asyncio
    async def test_generate_success(self, fake_gemini, make_upstream):
        req = build_request("draw", config={"responseModalities": ["IMAGE"]})
        response = await make_upstream().generate(req)
        assert response == fake_gemini.image_response
        call = fake_gemini.calls[0]
        assert call.url.path.endswith("/models/gemini-2.5-flash:generateContent")
        assert call.url.params["key"] == "test-key"

    @pytest.mark.asyncio
    async def test_generate_rate_limited(self, fake_gemini, make_upstream):
        fake_gemini.error = (429, "Resource has been exhausted")
        with pytest.raises(RateLimitError) as exc_info:
            await make_upstream().generate(build_request("x"))
        assert exc_info.value.status_code == 429
        assert "Resource has been exhausted" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_open_stream_rejected(self, fake_gemini, make_upstream):
        fake_gemini.error = (400, "API key not valid")
        with pytest.raises(UpstreamFailure) as exc_info:
            await make_upstream().open_stream(build_request("x"))
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_open_stream_yields_chunks(self, fake_gemini, make_upstream):
        fake_gemini.stream_chunks = [fake_gemini.chunk("Hello "), fake_gemini.chunk("World", finish_reason="STOP")]
        stream = await make_upstream().open_stream(build_request("x"))
        try:
            texts = [chunk_text(c) async for c in stream]
        finally:
            await stream.aclose()
        assert texts == ["Hello ", "World"]
        assert fake_gemini.calls[0].url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_missing_api_key(self, make_upstream):
        with pytest.raises(UpstreamFailure, match="GEMINI_API_KEY"):
            await make_upstream(api_key="").open_stream(build_request("x"))

    @pytest.mark.asyncio
    async def test_timeout_is_not_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        upstream = GeminiUpstream(api_key="k", timeout=1.0, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamFailure) as exc_info:
            await upstream.generate(build_request("x"))
        assert exc_info.value.status_code == 504
        assert not exc_info.value.is_transient
