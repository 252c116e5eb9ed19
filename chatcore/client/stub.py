from typing import Any, Dict, Optional

from grpc import aio

from .. import wire


class ChatStub:
    """Client side of ``chatcore.ChatService`` over the JSON wire format.

    Every unary RPC listed in ``wire.UNARY_METHODS`` becomes an awaitable
    attribute taking a request dict; once ``token`` is set it is sent as
    bearer metadata on each call.
    """

    def __init__(self, channel: aio.Channel, token: Optional[str] = None):
        self.token = token
        for name in wire.UNARY_METHODS:
            setattr(self, name, self._unary(channel, name))
        self._stream = channel.stream_stream(
            wire.method_path(wire.STREAM_METHOD),
            request_serializer=wire.encode,
            response_deserializer=wire.decode,
        )

    def _metadata(self):
        return (("authorization", f"Bearer {self.token}"),) if self.token else None

    def _unary(self, channel: aio.Channel, name: str):
        call = channel.unary_unary(
            wire.method_path(name),
            request_serializer=wire.encode,
            response_deserializer=wire.decode,
        )

        async def invoke(request: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
            return await call(request or {}, metadata=self._metadata())

        invoke.__name__ = name
        return invoke

    def OpenStream(self, request_iterator):
        """Open the realtime stream; the iterator must start with ``authenticate``."""
        return self._stream(request_iterator)
