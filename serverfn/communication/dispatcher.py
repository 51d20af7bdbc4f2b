"""
Dispatcher for Server Function Invocations

The dispatcher is the router contract of the serving process: given the raw
invocation envelope of one request and the context built for it, it resolves
the target function, runs it and answers through a Responder. It knows nothing
about HTTP; rpc_server provides the HTTP binding.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..core.codec import ValueCodec
from ..core.context import RequestContext, bind_context
from ..core.errors import CodecFailure, NotFound
from ..core.local_executor import LocalExecutor
from .rpc_protocol import InvocationEnvelope, InvocationMode, validate_invocation
from .streaming import Responder, ResponseStream


logger = logging.getLogger(__name__)


class Dispatcher:
    """Runs invocation envelopes against the local executor."""

    def __init__(self,
                 executor: LocalExecutor,
                 codec: ValueCodec,
                 expose_tracebacks: bool = False):
        self.executor = executor
        self.codec = codec
        self.expose_tracebacks = expose_tracebacks

    def decode_arguments(self, payload: Any) -> Tuple[List[Any], Dict[str, Any]]:
        """
        Decode the argument payload of an envelope.

        Raises:
            CodecFailure: If the payload is not ``[list, dict with str keys]``
        """
        decoded = self.codec.decode(payload)
        if not (isinstance(decoded, list) and len(decoded) == 2):
            raise CodecFailure("Arguments must encode [positional, keyword]")
        args, kwargs = decoded
        if not isinstance(args, list) or not isinstance(kwargs, dict):
            raise CodecFailure("Arguments must encode [positional, keyword]")
        if not all(isinstance(key, str) for key in kwargs):
            raise CodecFailure("Keyword argument names must be strings")
        return args, kwargs

    async def dispatch(self,
                       body: bytes,
                       context: RequestContext,
                       responder: Responder,
                       requested_mode: Optional[InvocationMode] = None) -> None:
        """
        Handle one invocation.

        Every failure becomes an error response; nothing raised by the
        envelope, the codec or the function body escapes to the server.

        Args:
            body: Raw invocation envelope
            context: Context of the request, bound for the whole call
            responder: Transport binding that sends the response
            requested_mode: Result shape announced by the caller's headers
        """
        stream = ResponseStream(self.codec, responder, self.expose_tracebacks)

        with bind_context(context):
            try:
                envelope = InvocationEnvelope.from_json(body)
                validation_errors = validate_invocation(envelope)
                if validation_errors:
                    raise CodecFailure("Validation errors: " + ", ".join(validation_errors))

                args, kwargs = self.decode_arguments(envelope.args)
                mode = requested_mode or envelope.mode
                descriptor = self.executor.registry.resolve(envelope.identifier)
                if descriptor.kind.is_sequence and mode is not InvocationMode.STREAM:
                    raise CodecFailure(
                        f"{descriptor.name} produces a sequence and must be invoked in stream mode"
                    )
                logger.debug(f"Dispatching {envelope.identifier} ({mode.value}) request {envelope.request_id}")

                result = await self.executor.run(envelope.identifier, tuple(args), kwargs, context)

            except NotFound as e:
                # Usually a client built from a different version of the code
                logger.warning(f"Unknown server function '{e.identifier}', possible version skew")
                stream.fail(e)
                return
            except CodecFailure as e:
                logger.warning(f"Rejecting malformed invocation: {e}")
                stream.fail(e)
                return
            except Exception as e:
                logger.info(f"Server function raised {e.__class__.__name__}: {e}")
                stream.fail(e)
                return

            await stream.run(result)
