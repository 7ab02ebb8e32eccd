"""
HTTP Executor - Sends a templated HTTP request for a flow step.

The rendered URL, headers and body are sent with requests, bounded by the
step timeout. A non-zero expect_status must match the response status;
saved values are read from JSON response bodies.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import requests

from ..engine.executor_interface import (
    ExpectationError, ProtocolError, StepContext, StepExecutor, run_cancellable
)
from ..engine.extraction import is_json, save_response_values, trim_long_string
from ..models.flow import StepKind

logger = logging.getLogger(__name__)


class HTTPExecutor(StepExecutor):
    """
    HTTP step executor.

    Step fields:
        - method: HTTP method
        - url: Request URL (templated)
        - headers: Request headers (values templated)
        - body: Raw request body (templated)
        - expect_status: Required status code (0 disables the check)
        - save: Variable name -> JSON path into the response body
    """

    def __init__(self, session_factory: Optional[Callable[[], requests.Session]] = None):
        """
        Initialize executor.

        Args:
            session_factory: Creates the session used for one step (default: requests.Session)
        """
        self.session_factory = session_factory or requests.Session

    @property
    def kind(self) -> StepKind:
        return StepKind.HTTP

    def execute(self, context: StepContext) -> None:
        """Send the request, check the status and save values."""
        step = context.step
        method = step.method.strip().upper()
        url = context.render(step.url)
        body = context.render(step.body)
        headers = context.render_map(step.headers)
        timeout = context.timeout

        sent_at = datetime.now(timezone.utc)
        context.log.set_request(
            method=method,
            url=url,
            headers=headers,
            body=body or None,
            sent_at=sent_at.isoformat(),
        )

        logger.info(f"[http] {step.name}: {method} {trim_long_string(url)}")

        session = self.session_factory()
        started = time.monotonic()
        try:
            response = run_cancellable(
                context,
                lambda: session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    data=body.encode("utf-8") if body else None,
                    timeout=timeout,
                ),
                on_cancel=session.close,
            )
        except requests.Timeout as e:
            context.log.set_response(transport_error=str(e))
            raise ProtocolError(step.name, f"request timed out after {timeout}s: {url}", e) from e
        except requests.ConnectionError as e:
            context.log.set_response(transport_error=str(e))
            raise ProtocolError(step.name, f"connection failed: {url} - {e}", e) from e
        except requests.RequestException as e:
            context.log.set_response(transport_error=str(e))
            raise ProtocolError(step.name, f"send request failed: {url} - {e}", e) from e
        finally:
            session.close()

        duration_ms = int((time.monotonic() - started) * 1000)
        status_code = response.status_code
        content = response.content or b""

        context.log.set_response(
            status=status_code,
            headers=dict(response.headers or {}),
            body=response.text,
            duration_ms=duration_ms,
        )

        logger.info(f"[http] {step.name}: status={status_code} ({duration_ms}ms)")

        if step.expect_status and status_code != step.expect_status:
            logger.error(f"[http] {step.name}: expected {step.expect_status}, got {status_code}")
            raise ExpectationError(
                step.name,
                f"unexpected status {status_code} (expected {step.expect_status})",
                expected=step.expect_status,
                actual=status_code,
                detail=response.text,
            )

        if not step.save or not content:
            return

        if not is_json(content):
            logger.debug(f"[http] {step.name}: response is not JSON, nothing to save")
            return

        save_response_values(step.name, content, step.save, context.variables)
