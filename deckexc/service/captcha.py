from __future__ import annotations

from typing import Optional

import httpx

from deckexc.logging import get_logger
from deckexc.service.errors import (
    InvalidCaptchaError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

logger = get_logger(__name__)


class CaptchaVerifier:
    """Checks reCAPTCHA response tokens with the verification endpoint.

    One attempt per call, bounded by ``timeout`` seconds; there is no retry.
    """

    def __init__(
        self,
        secret: str,
        verify_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: Optional[str]) -> None:
        if not token:
            raise InvalidCaptchaError("captcha token is required")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=False
            ) as client:
                response = await client.post(
                    self.verify_url,
                    data={"secret": self.secret, "response": token},
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                result = response.json()
        except httpx.TimeoutException as exc:
            logger.error("captcha_verify_timeout", timeout=self.timeout)
            raise UpstreamTimeoutError("captcha verification timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "captcha_verify_http_error", status_code=exc.response.status_code
            )
            raise UpstreamUnavailableError("captcha verification failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("captcha_verify_error", error=str(exc))
            raise UpstreamUnavailableError("captcha verification failed") from exc

        if not isinstance(result, dict) or result.get("success") is not True:
            logger.warning(
                "captcha_rejected",
                error_codes=result.get("error-codes") if isinstance(result, dict) else None,
            )
            raise InvalidCaptchaError("captcha verification was rejected")
