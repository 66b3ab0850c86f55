from __future__ import annotations

import collections
import logging
import ssl
import time
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Protocol, Sequence, Union

import grpc

from dbgsync import debuginfo_pb as pb
from dbgsync.cancellation import CancelToken, get_cancel_token
from dbgsync.exceptions import InputError
from dbgsync.model import ArtifactKind
from dbgsync.schema import UploadDecision, UploadInstructions, UploadSettings

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1 << 20
DEFAULT_TLS_PORT = 443
_POLL_INTERVAL_SECONDS = 0.1

ClientInterceptor = Union[grpc.UnaryUnaryClientInterceptor, grpc.StreamUnaryClientInterceptor]

_KIND_TO_PB: dict[ArtifactKind, int] = {
    ArtifactKind.DEBUGINFO: pb.DEBUGINFO_TYPE_DEBUGINFO_UNSPECIFIED,
    ArtifactKind.EXECUTABLE: pb.DEBUGINFO_TYPE_EXECUTABLE,
    ArtifactKind.SOURCES: pb.DEBUGINFO_TYPE_SOURCES,
}
_PB_TO_KIND = {value: key for key, value in _KIND_TO_PB.items()}


class DebuginfoStore(Protocol):
    def should_initiate_upload(
        self, build_id: str, *, force: bool, kind: ArtifactKind
    ) -> UploadDecision: ...

    def initiate_upload(
        self,
        build_id: str,
        *,
        hash: str,
        size: int,
        force: bool,
        kind: ArtifactKind,
    ) -> UploadInstructions: ...

    def upload(self, instructions: UploadInstructions, reader: BinaryIO) -> int: ...

    def mark_upload_finished(
        self, build_id: str, upload_id: str, *, kind: ArtifactKind
    ) -> None: ...


def debuginfo_type_to_pb(kind: ArtifactKind) -> int:
    return _KIND_TO_PB[kind]


def debuginfo_type_from_pb(value: int) -> ArtifactKind:
    return _PB_TO_KIND.get(value, ArtifactKind.DEBUGINFO)


def instructions_from_pb(message) -> UploadInstructions:
    return UploadInstructions(
        build_id=message.build_id,
        upload_id=message.upload_id,
        strategy=int(message.upload_strategy),
        signed_url=message.signed_url,
        kind=debuginfo_type_from_pb(int(message.type)),
    )


def await_future(
    future: grpc.Future,
    *,
    token: CancelToken | None = None,
    poll_interval: float = _POLL_INTERVAL_SECONDS,
):
    """Wait for an RPC while watching the cancellation token.

    On cancellation the in-flight call is cancelled and
    ``OperationCancelled`` is raised.
    """
    cancel_token = token if token is not None else get_cancel_token()
    while True:
        try:
            return future.result(timeout=poll_interval)
        except grpc.FutureTimeoutError:
            if cancel_token.cancelled:
                future.cancel()
                cancel_token.check()


class GrpcDebuginfoStore:
    def __init__(
        self,
        channel: grpc.Channel,
        *,
        chunk_size: int = UPLOAD_CHUNK_SIZE,
        poll_interval: float = _POLL_INTERVAL_SECONDS,
    ) -> None:
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval
        self._should_initiate = channel.unary_unary(
            pb.SHOULD_INITIATE_UPLOAD_METHOD,
            request_serializer=pb.ShouldInitiateUploadRequest.SerializeToString,
            response_deserializer=pb.ShouldInitiateUploadResponse.FromString,
        )
        self._initiate = channel.unary_unary(
            pb.INITIATE_UPLOAD_METHOD,
            request_serializer=pb.InitiateUploadRequest.SerializeToString,
            response_deserializer=pb.InitiateUploadResponse.FromString,
        )
        self._mark_finished = channel.unary_unary(
            pb.MARK_UPLOAD_FINISHED_METHOD,
            request_serializer=pb.MarkUploadFinishedRequest.SerializeToString,
            response_deserializer=pb.MarkUploadFinishedResponse.FromString,
        )
        self._upload = channel.stream_unary(
            pb.UPLOAD_METHOD,
            request_serializer=pb.UploadRequest.SerializeToString,
            response_deserializer=pb.UploadResponse.FromString,
        )

    def _call(self, multicallable, request):
        token = get_cancel_token()
        token.check()
        return await_future(
            multicallable.future(request),
            token=token,
            poll_interval=self._poll_interval,
        )

    def should_initiate_upload(
        self, build_id: str, *, force: bool, kind: ArtifactKind
    ) -> UploadDecision:
        response = self._call(
            self._should_initiate,
            pb.ShouldInitiateUploadRequest(
                build_id=build_id,
                force=force,
                type=debuginfo_type_to_pb(kind),
            ),
        )
        return UploadDecision(
            should_upload=bool(response.should_initiate_upload),
            reason=response.reason,
        )

    def initiate_upload(
        self,
        build_id: str,
        *,
        hash: str,
        size: int,
        force: bool,
        kind: ArtifactKind,
    ) -> UploadInstructions:
        response = self._call(
            self._initiate,
            pb.InitiateUploadRequest(
                build_id=build_id,
                hash=hash,
                size=size,
                force=force,
                type=debuginfo_type_to_pb(kind),
            ),
        )
        return instructions_from_pb(response.upload_instructions)

    def upload_requests(
        self,
        instructions: UploadInstructions,
        reader: BinaryIO,
        token: CancelToken,
    ) -> Iterator:
        # Consumed on a gRPC thread: the token is passed in because the
        # context variable is not visible there.
        yield pb.UploadRequest(
            info=pb.UploadInfo(
                build_id=instructions.build_id,
                upload_id=instructions.upload_id,
                type=debuginfo_type_to_pb(instructions.kind),
            )
        )
        while not token.cancelled:
            chunk = reader.read(self._chunk_size)
            if not chunk:
                return
            yield pb.UploadRequest(chunk_data=chunk)

    def upload(self, instructions: UploadInstructions, reader: BinaryIO) -> int:
        token = get_cancel_token()
        response = self._call(
            self._upload, self.upload_requests(instructions, reader, token)
        )
        return int(response.size)

    def mark_upload_finished(
        self, build_id: str, upload_id: str, *, kind: ArtifactKind
    ) -> None:
        self._call(
            self._mark_finished,
            pb.MarkUploadFinishedRequest(
                build_id=build_id,
                upload_id=upload_id,
                type=debuginfo_type_to_pb(kind),
            ),
        )


class _ClientCallDetails(
    collections.namedtuple(
        "_ClientCallDetails",
        ("method", "timeout", "metadata", "credentials", "wait_for_ready", "compression"),
    ),
    grpc.ClientCallDetails,
):
    pass


class BearerTokenInterceptor(
    grpc.UnaryUnaryClientInterceptor, grpc.StreamUnaryClientInterceptor
):
    """Attach the bearer token on plaintext channels.

    Only installed when plaintext was explicitly requested; TLS channels
    carry the token as call credentials instead.
    """

    def __init__(self, token: str) -> None:
        self._metadata = ("authorization", f"Bearer {token}")

    def _details(self, details: grpc.ClientCallDetails) -> _ClientCallDetails:
        metadata = list(details.metadata or ())
        metadata.append(self._metadata)
        return _ClientCallDetails(
            details.method,
            details.timeout,
            metadata,
            details.credentials,
            getattr(details, "wait_for_ready", None),
            getattr(details, "compression", None),
        )

    def intercept_unary_unary(self, continuation, client_call_details, request):
        return continuation(self._details(client_call_details), request)

    def intercept_stream_unary(self, continuation, client_call_details, request_iterator):
        return continuation(self._details(client_call_details), request_iterator)


RecordCallFn = Callable[[str, "grpc.StatusCode | None", float], None]


def _log_call(method: str, code: grpc.StatusCode | None, elapsed: float) -> None:
    logger.debug("%s finished with %s in %.3fs", method, getattr(code, "name", code), elapsed)


class CallTimingInterceptor(
    grpc.UnaryUnaryClientInterceptor, grpc.StreamUnaryClientInterceptor
):
    """Report method, status code and duration of every store call."""

    def __init__(
        self,
        *,
        record_fn: RecordCallFn = _log_call,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._record_fn = record_fn
        self._clock = clock

    def _timed(self, continuation, client_call_details, request):
        started = self._clock()
        outcome = continuation(client_call_details, request)

        def _done(call) -> None:
            try:
                code = call.code()
            except grpc.RpcError:
                code = None
            self._record_fn(client_call_details.method, code, self._clock() - started)

        outcome.add_done_callback(_done)
        return outcome

    def intercept_unary_unary(self, continuation, client_call_details, request):
        return self._timed(continuation, client_call_details, request)

    def intercept_stream_unary(self, continuation, client_call_details, request_iterator):
        return self._timed(continuation, client_call_details, request_iterator)


def load_bearer_token(settings: UploadSettings) -> str | None:
    if settings.bearer_token:
        return settings.bearer_token
    if settings.bearer_token_file is None:
        return None
    path = Path(settings.bearer_token_file)
    try:
        token = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise InputError(f"failed to read bearer token from file {str(path)!r}: {exc}") from exc
    return token or None


def split_address(address: str) -> tuple[str, int]:
    target = address.split("///", 1)[-1]
    host, sep, port = target.rpartition(":")
    if not sep or not port.isdigit():
        return target, DEFAULT_TLS_PORT
    return host.strip("[]"), int(port)


def channel_credentials(
    settings: UploadSettings,
    token: str | None,
    *,
    fetch_certificate_fn: Callable[[tuple[str, int]], str] = ssl.get_server_certificate,
) -> grpc.ChannelCredentials:
    root_certificates = None
    if settings.insecure_skip_verify:
        # Trust whatever certificate the server presents.
        pem = fetch_certificate_fn(split_address(settings.store_address))
        root_certificates = pem.encode("ascii")
    credentials = grpc.ssl_channel_credentials(root_certificates=root_certificates)
    if token:
        credentials = grpc.composite_channel_credentials(
            credentials, grpc.access_token_call_credentials(token)
        )
    return credentials


def open_channel(
    settings: UploadSettings,
    *,
    secure_channel_fn: Callable[..., grpc.Channel] = grpc.secure_channel,
    insecure_channel_fn: Callable[..., grpc.Channel] = grpc.insecure_channel,
    fetch_certificate_fn: Callable[[tuple[str, int]], str] = ssl.get_server_certificate,
    interceptors: Sequence[ClientInterceptor] = (),
) -> grpc.Channel:
    """Dial the store; ``interceptors`` wrap every call on the channel."""
    token = load_bearer_token(settings)
    if settings.insecure:
        logger.debug("connecting to %s over plaintext", settings.store_address)
        channel = insecure_channel_fn(settings.store_address)
        if token:
            channel = grpc.intercept_channel(channel, BearerTokenInterceptor(token))
    else:
        logger.debug("connecting to %s over TLS", settings.store_address)
        channel = secure_channel_fn(
            settings.store_address,
            channel_credentials(settings, token, fetch_certificate_fn=fetch_certificate_fn),
        )
    if interceptors:
        channel = grpc.intercept_channel(channel, *interceptors)
    return channel


@contextmanager
def store_session(
    settings: UploadSettings,
    *,
    open_channel_fn: Callable[..., grpc.Channel] = open_channel,
    interceptors: Sequence[ClientInterceptor] | None = None,
) -> Iterator[GrpcDebuginfoStore]:
    if interceptors is None:
        interceptors = (CallTimingInterceptor(),)
    channel = open_channel_fn(settings, interceptors=interceptors)
    try:
        yield GrpcDebuginfoStore(channel)
    finally:
        channel.close()
