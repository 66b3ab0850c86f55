from __future__ import annotations

import io
from pathlib import Path
from types import SimpleNamespace

import grpc
import pytest

from dbgsync import debuginfo_pb as pb
from dbgsync.exceptions import InputError, OperationCancelled
from dbgsync.model import ArtifactKind
from dbgsync.schema import UploadInstructions, UploadSettings, UploadStrategy
from dbgsync.store_client import (
    BearerTokenInterceptor,
    CallTimingInterceptor,
    GrpcDebuginfoStore,
    _ClientCallDetails,
    await_future,
    instructions_from_pb,
    load_bearer_token,
    open_channel,
    split_address,
    store_session,
)
from tests.fakes import FakeRpcError


class _FakeFuture:
    def __init__(self, response=None, error: BaseException | None = None) -> None:
        self.response = response
        self.error = error
        self.cancelled = False

    def result(self, timeout: float | None = None):
        if self.error is not None:
            raise self.error
        return self.response

    def cancel(self) -> bool:
        self.cancelled = True
        return True


class _PendingFuture(_FakeFuture):
    def result(self, timeout: float | None = None):
        raise grpc.FutureTimeoutError()


class _FakeMultiCallable:
    def __init__(self, method: str, response) -> None:
        self.method = method
        self.response = response
        self.requests: list[object] = []

    def future(self, request):
        if not hasattr(request, "SerializeToString"):
            request = list(request)
        self.requests.append(request)
        return _FakeFuture(self.response)


class _FakeChannel:
    def __init__(self, responses: dict[str, object]) -> None:
        self.responses = responses
        self.callables: dict[str, _FakeMultiCallable] = {}
        self.closed = False

    def _callable(self, method: str, request_serializer, response_deserializer):
        callable_ = _FakeMultiCallable(method, self.responses.get(method))
        self.callables[method] = callable_
        return callable_

    unary_unary = _callable
    stream_unary = _callable

    def close(self) -> None:
        self.closed = True


def _store(**responses: object) -> tuple[GrpcDebuginfoStore, _FakeChannel]:
    channel = _FakeChannel(
        {
            pb.SHOULD_INITIATE_UPLOAD_METHOD: responses.get("should"),
            pb.INITIATE_UPLOAD_METHOD: responses.get("initiate"),
            pb.UPLOAD_METHOD: responses.get("upload"),
            pb.MARK_UPLOAD_FINISHED_METHOD: pb.MarkUploadFinishedResponse(),
        }
    )
    return GrpcDebuginfoStore(channel, chunk_size=4, poll_interval=0.01), channel


def test_should_initiate_upload_maps_kind_and_decision() -> None:
    store, channel = _store(
        should=pb.ShouldInitiateUploadResponse(should_initiate_upload=True, reason="new")
    )

    decision = store.should_initiate_upload("abc", force=True, kind=ArtifactKind.EXECUTABLE)

    request = channel.callables[pb.SHOULD_INITIATE_UPLOAD_METHOD].requests[0]
    assert (request.build_id, request.force, request.type) == ("abc", True, 1)
    assert decision.should_upload is True
    assert decision.reason == "new"


def test_initiate_upload_converts_instructions() -> None:
    store, channel = _store(
        initiate=pb.InitiateUploadResponse(
            upload_instructions=pb.UploadInstructions(
                build_id="abc",
                upload_id="u-1",
                upload_strategy=pb.UPLOAD_STRATEGY_SIGNED_URL,
                signed_url="https://bucket.example/u-1",
                type=pb.DEBUGINFO_TYPE_SOURCES,
            )
        )
    )

    instructions = store.initiate_upload(
        "abc", hash="ff", size=10, force=False, kind=ArtifactKind.SOURCES
    )

    request = channel.callables[pb.INITIATE_UPLOAD_METHOD].requests[0]
    assert (request.hash, request.size, request.type) == ("ff", 10, 2)
    assert instructions.strategy is UploadStrategy.SIGNED_URL
    assert instructions.upload_id == "u-1"
    assert instructions.signed_url == "https://bucket.example/u-1"
    assert instructions.kind is ArtifactKind.SOURCES


def test_unknown_strategy_value_is_preserved() -> None:
    message = SimpleNamespace(
        build_id="abc", upload_id="u-1", upload_strategy=9, signed_url="", type=0
    )

    instructions = instructions_from_pb(message)

    assert instructions.strategy == 9
    assert not isinstance(instructions.strategy, UploadStrategy)
    assert instructions.strategy_name == "UNKNOWN(9)"


def test_upload_streams_info_then_chunks() -> None:
    store, channel = _store(upload=pb.UploadResponse(build_id="abc", size=10))
    instructions = UploadInstructions(
        build_id="abc", upload_id="u-1", strategy=UploadStrategy.GRPC
    )

    size = store.upload(instructions, io.BytesIO(b"0123456789"))

    requests = channel.callables[pb.UPLOAD_METHOD].requests[0]
    assert size == 10
    assert requests[0].WhichOneof("data") == "info"
    assert requests[0].info.upload_id == "u-1"
    assert [request.chunk_data for request in requests[1:]] == [b"0123", b"4567", b"89"]


def test_mark_upload_finished_sends_upload_id() -> None:
    store, channel = _store()

    store.mark_upload_finished("abc", "u-1", kind=ArtifactKind.DEBUGINFO)

    request = channel.callables[pb.MARK_UPLOAD_FINISHED_METHOD].requests[0]
    assert (request.build_id, request.upload_id, request.type) == ("abc", "u-1", 0)


def test_await_future_cancels_in_flight_call(cancel_token) -> None:
    future = _PendingFuture()
    cancel_token.cancel("received signal SIGTERM")

    with pytest.raises(OperationCancelled) as excinfo:
        await_future(future, poll_interval=0.01)

    assert future.cancelled is True
    assert "SIGTERM" in str(excinfo.value)


def test_await_future_propagates_rpc_errors() -> None:
    error = FakeRpcError(grpc.StatusCode.PERMISSION_DENIED, "bad token")

    with pytest.raises(grpc.RpcError):
        await_future(_FakeFuture(error=error), poll_interval=0.01)


def test_cancelled_token_prevents_new_calls(cancel_token) -> None:
    store, channel = _store()
    cancel_token.cancel()

    with pytest.raises(OperationCancelled):
        store.mark_upload_finished("abc", "u-1", kind=ArtifactKind.DEBUGINFO)

    assert channel.callables[pb.MARK_UPLOAD_FINISHED_METHOD].requests == []


def test_bearer_token_from_file_is_stripped(tmp_path: Path) -> None:
    token_file = tmp_path / "token"
    token_file.write_text("  secret-token\n")
    settings = UploadSettings(store_address="store:7070", bearer_token_file=token_file)

    assert load_bearer_token(settings) == "secret-token"


def test_bearer_token_sources() -> None:
    assert load_bearer_token(UploadSettings(store_address="s:1", bearer_token="t")) == "t"
    assert load_bearer_token(UploadSettings(store_address="s:1")) is None


def test_unreadable_bearer_token_file_is_an_input_error(tmp_path: Path) -> None:
    settings = UploadSettings(store_address="s:1", bearer_token_file=tmp_path / "missing")

    with pytest.raises(InputError):
        load_bearer_token(settings)


def test_interceptor_appends_authorization_metadata() -> None:
    captured: list[_ClientCallDetails] = []
    details = _ClientCallDetails("/svc/Method", None, [("x-request", "1")], None, None, None)

    def _continuation(call_details, request):
        captured.append(call_details)
        return request

    interceptor = BearerTokenInterceptor("secret")
    assert interceptor.intercept_unary_unary(_continuation, details, "req") == "req"

    assert captured[0].method == "/svc/Method"
    assert captured[0].metadata == [("x-request", "1"), ("authorization", "Bearer secret")]


def test_insecure_channel_without_token_is_plain() -> None:
    opened: list[str] = []
    sentinel = object()

    def _insecure(address: str):
        opened.append(address)
        return sentinel

    channel = open_channel(
        UploadSettings(store_address="localhost:7070", insecure=True),
        insecure_channel_fn=_insecure,
    )

    assert channel is sentinel
    assert opened == ["localhost:7070"]


def test_skip_verify_trusts_presented_certificate() -> None:
    fetched: list[tuple[str, int]] = []
    opened: list[tuple[str, object]] = []

    def _fetch(address: tuple[str, int]) -> str:
        fetched.append(address)
        return "-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"

    def _secure(address: str, credentials):
        opened.append((address, credentials))
        return "channel"

    channel = open_channel(
        UploadSettings(
            store_address="store.example", insecure_skip_verify=True, bearer_token="t"
        ),
        secure_channel_fn=_secure,
        fetch_certificate_fn=_fetch,
    )

    assert channel == "channel"
    assert fetched == [("store.example", 443)]
    assert opened[0][0] == "store.example"
    assert isinstance(opened[0][1], grpc.ChannelCredentials)


def test_split_address_variants() -> None:
    assert split_address("store.example:7070") == ("store.example", 7070)
    assert split_address("dns:///store.example:443") == ("store.example", 443)
    assert split_address("store.example") == ("store.example", 443)
    assert split_address("[::1]:7070") == ("::1", 7070)


class _FakeOutcome:
    def __init__(
        self, code: grpc.StatusCode | None = None, error: grpc.RpcError | None = None
    ) -> None:
        self._code = code
        self._error = error
        self.callbacks: list = []

    def code(self):
        if self._error is not None:
            raise self._error
        return self._code

    def add_done_callback(self, callback) -> None:
        self.callbacks.append(callback)

    def finish(self) -> None:
        for callback in self.callbacks:
            callback(self)


def test_call_timing_interceptor_records_method_code_and_duration() -> None:
    recorded: list[tuple[str, object, float]] = []
    ticks = iter([10.0, 10.25, 20.0, 21.5])
    interceptor = CallTimingInterceptor(
        record_fn=lambda method, code, elapsed: recorded.append((method, code, elapsed)),
        clock=lambda: next(ticks),
    )
    unary = _FakeOutcome(code=grpc.StatusCode.OK)
    streamed = _FakeOutcome(error=FakeRpcError(grpc.StatusCode.UNAVAILABLE, "down"))
    unary_details = _ClientCallDetails("/svc/Check", None, None, None, None, None)
    stream_details = _ClientCallDetails("/svc/Upload", None, None, None, None, None)

    assert interceptor.intercept_unary_unary(lambda d, r: unary, unary_details, "req") is unary
    assert recorded == []
    unary.finish()
    assert (
        interceptor.intercept_stream_unary(lambda d, r: streamed, stream_details, iter(()))
        is streamed
    )
    streamed.finish()

    assert recorded == [
        ("/svc/Check", grpc.StatusCode.OK, 0.25),
        ("/svc/Upload", None, 1.5),
    ]


def test_interceptors_wrap_the_channel_and_close_through() -> None:
    fake = _FakeChannel({})

    channel = open_channel(
        UploadSettings(store_address="localhost:7070", insecure=True),
        insecure_channel_fn=lambda address: fake,
        interceptors=(CallTimingInterceptor(record_fn=lambda *args: None),),
    )

    assert channel is not fake
    assert isinstance(channel, grpc.Channel)
    channel.close()
    assert fake.closed


def test_store_session_installs_call_timing_and_closes_channel() -> None:
    received: list[tuple] = []
    fake = _FakeChannel({})

    def _open(settings: UploadSettings, *, interceptors):
        received.append(tuple(interceptors))
        return fake

    settings = UploadSettings(store_address="localhost:7070", insecure=True)
    with store_session(settings, open_channel_fn=_open) as store:
        assert isinstance(store, GrpcDebuginfoStore)
        assert not fake.closed

    assert fake.closed
    assert len(received[0]) == 1
    assert isinstance(received[0][0], CallTimingInterceptor)
