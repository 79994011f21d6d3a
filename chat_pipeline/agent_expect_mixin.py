"""Expectation retry protocol for Agent."""

from typing import TYPE_CHECKING, Any

from chat_pipeline.exceptions import ExpectationExhaustedError
from chat_pipeline.expect import ExpectError, Validator
from chat_pipeline.logging import get_logger
from chat_pipeline.stage import Stage, maybe_await

if TYPE_CHECKING:
    from chat_pipeline.agent import Agent

log = get_logger(__name__)


def _is_rejection(result: Any) -> bool:
    if isinstance(result, ExpectError):
        return True
    return isinstance(result, dict) and result.get("type") == "error"


class AgentExpectMixin:
    """Validate the latest response and ask the backend to correct it."""

    def expect(self, *validators: Validator, id: str | None = None) -> "Agent":
        """Check the latest response against ``validators``.

        Validators run in order as ``validator(response=..., locals=...,
        chat=..., **partial)``. Returning a dict passes it on as ``partial``
        to the next validator; returning ``ExpectError`` rejects. A rejection
        is recorded as an ``error`` message and the chat is sent again. After
        ``settings.max_call_stack`` rejected attempts the stage fails.
        """

        async def procedure(agent: "Agent") -> None:
            max_attempts = agent.settings.max_call_stack
            for attempt in range(1, max_attempts + 1):
                response = agent.chat.last_message("response")
                if response is None:
                    log.warning("No response found in the chat history; expectation skipped")
                    return

                partial: dict[str, Any] = {}
                rejection: Any = None
                for validator in validators:
                    result = await maybe_await(
                        validator(response=response, locals=agent.locals, chat=agent, **partial)
                    )
                    if not result:
                        continue
                    if _is_rejection(result):
                        rejection = result
                        break
                    partial = dict(result)

                if rejection is None:
                    return

                reason = rejection.error if isinstance(rejection, ExpectError) else rejection.get("error")
                log.info("Expectation rejected response", attempt=attempt, reason=reason)
                message = agent._record_error(reason or "Expectation failed")
                await agent._send(functions=True, caller=message.id)

            raise ExpectationExhaustedError(max_attempts)

        self._add_stage(Stage(id=id or self.new_id(), name="expect", procedure=procedure))
        return self
