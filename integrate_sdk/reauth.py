"""Re-authentication with bounded retries.

Every outbound call that can fail with an authentication error runs through
ReauthCoordinator.run(). On a 401-class failure the caller-supplied handler
is asked to re-authorize the owning provider; if it reports success the call
is retried, up to max_retries times. A handler that returns False or raises
ends the attempt and the original error propagates. Nothing here clears a
provider's token: a failed re-authentication leaves the prior state intact.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import AuthenticationError, IntegrateSDKError, is_auth_error, parse_server_error
from .oauth.store import maybe_await

logger = logging.getLogger(__name__)

DEFAULT_MAX_REAUTH_RETRIES = 1

T = TypeVar("T")


@dataclass
class ReauthContext:
    """What the re-authentication handler is told.

    Attributes:
        provider: Provider whose authorization failed
        error: The authentication error that triggered re-authentication
        tool_name: Tool whose call failed, when re-authentication was triggered by a call
    """

    provider: str
    error: AuthenticationError
    tool_name: str | None = None


ReauthHandler = Callable[[ReauthContext], Awaitable[bool] | bool]


class ReauthCoordinator:
    """Wraps operations with re-authentication and retry."""

    def __init__(
        self,
        handler: ReauthHandler | None = None,
        max_retries: int = DEFAULT_MAX_REAUTH_RETRIES,
    ):
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")

        self.handler = handler
        self.max_retries = max_retries
        self.last_errors: dict[str, AuthenticationError] = {}

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        provider: str | None = None,
        tool_name: str | None = None,
    ) -> T:
        """Run an operation, re-authenticating and retrying on auth failure.

        Args:
            operation: Zero-argument coroutine function performing the call
            provider: Provider owning the call (None for unauthenticated calls)
            tool_name: Tool being called, passed to the handler and error parser

        Returns:
            The operation's result

        Raises:
            IntegrateSDKError: The classified error of the last failed attempt
        """
        retries = 0

        while True:
            try:
                result = await operation()
            except Exception as e:
                error = parse_server_error(e, tool_name=tool_name, provider=provider)

                can_retry = (
                    is_auth_error(error)
                    and provider is not None
                    and self.handler is not None
                    and retries < self.max_retries
                )
                if is_auth_error(error) and provider is not None:
                    self.last_errors[provider] = error  # type: ignore[assignment]

                if not can_retry:
                    self._raise(error, e)

                logger.info(f"Authentication failed for {provider}; requesting re-authentication")
                context = ReauthContext(provider=provider, error=error, tool_name=tool_name)  # type: ignore[arg-type]
                if not await self._invoke_handler(context):
                    self._raise(error, e)

                retries += 1
                logger.debug(f"Retrying {tool_name or 'operation'} after re-authentication ({retries}/{self.max_retries})")
                continue

            if provider is not None:
                self.last_errors.pop(provider, None)
            return result

    async def reauthenticate(self, provider: str, error: AuthenticationError | None = None) -> bool:
        """Ask the handler to re-authorize a provider outside of a call.

        Returns:
            Whether the handler reported success

        Raises:
            IntegrateSDKError: If no handler is configured
        """
        if self.handler is None:
            raise IntegrateSDKError(
                "No re-authentication handler configured. Set on_reauth_required in the client config."
            )

        error = error or self.last_errors.get(provider) or AuthenticationError(
            "Manual re-authentication requested", provider=provider
        )

        success = await self._invoke_handler(ReauthContext(provider=provider, error=error))
        if success:
            self.last_errors.pop(provider, None)
        return success

    async def _invoke_handler(self, context: ReauthContext) -> bool:
        assert self.handler is not None
        try:
            return bool(await maybe_await(self.handler(context)))
        except Exception as e:
            logger.warning(f"Re-authentication handler failed for {context.provider}: {e}")
            return False

    @staticmethod
    def _raise(error: IntegrateSDKError, original: Exception) -> None:
        if error is original:
            raise error
        raise error from original
