"""
Follow-up Reconciler

Folds suggested follow-up questions into the terminal frame.

The upstream produces follow-ups in one of two places:

    - embedded in the chat stream as `follow_up` messages, or
    - asynchronously, written into client-scoped variables
      (follow_up_q1 .. follow_up_qN) after the answer completed

The stream-embedded result always wins. Only when it is empty is the side
channel read, once, bounded by FOLLOW_UP_READ_TIMEOUT. Values found there are
cleared afterwards so they are not served again with the next answer.
Reconciliation never raises: any failure yields an empty result.
"""

import asyncio

from src.chat.models.frames import FollowUpProvenance, FollowUpResult
from src.core.config.settings import get_settings
from src.core.logging.logger import get_logger, log_stage
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from src.upstream.base_client import UpstreamClient, VariableOptions

logger = get_logger(__name__)


def _suffix(name: str, prefix: str) -> int:
    try:
        return int(name[len(prefix):])
    except ValueError:
        return 1_000_000


def extract_follow_ups(variables: dict[str, str], prefix: str) -> list[str]:
    """Values of `<prefix><n>` variables that are non-blank, ordered by n."""
    names = sorted(
        (name for name, value in variables.items() if name.startswith(prefix) and value and value.strip()),
        key=lambda name: _suffix(name, prefix),
    )
    return [variables[name].strip() for name in names]


class FollowUpReconciler:
    """
    STAGE-5: Follow-up reconciliation

    Usage:
        reconciler = FollowUpReconciler(upstream_client)
        result = await reconciler.reconcile("u-1", outcome.stream_follow_ups, access_token)
    """

    def __init__(
        self,
        client: UpstreamClient,
        variable_prefix: str | None = None,
        variable_count: int | None = None,
        read_timeout: float | None = None,
        clear_attempts: int | None = None,
        metrics: MetricsCollector | None = None,
    ):
        settings = get_settings().follow_up
        self._client = client
        self.variable_prefix = variable_prefix or settings.FOLLOW_UP_VARIABLE_PREFIX
        self.variable_count = variable_count or settings.FOLLOW_UP_VARIABLE_COUNT
        self.read_timeout = read_timeout or settings.FOLLOW_UP_READ_TIMEOUT
        self.clear_attempts = clear_attempts or settings.FOLLOW_UP_CLEAR_ATTEMPTS
        self._metrics = metrics or get_metrics_collector()

    @property
    def variable_names(self) -> list[str]:
        return [f"{self.variable_prefix}{i}" for i in range(1, self.variable_count + 1)]

    async def reconcile(
        self,
        client_id: str,
        stream_embedded: list[str] | None,
        access_token: str | None = None,
    ) -> FollowUpResult:
        embedded = [q.strip() for q in (stream_embedded or []) if q and q.strip()]
        if embedded:
            result = FollowUpResult(questions=embedded, provenance=FollowUpProvenance.FROM_STREAM)
            self._metrics.record_follow_up(result.provenance.value)
            return result

        opts = VariableOptions(client_id=client_id, access_token=access_token)
        try:
            variables = await asyncio.wait_for(
                self._client.get_variables(self.variable_names, opts), self.read_timeout
            )
        except TimeoutError:
            log_stage(logger, "5.1", "Follow-up read timed out", level="warning", client_id=client_id, timeout=self.read_timeout)
            self._metrics.record_follow_up(FollowUpProvenance.NONE.value)
            return FollowUpResult.none()
        except Exception as e:
            log_stage(logger, "5.1", "Follow-up read failed", level="warning", client_id=client_id, error=str(e))
            self._metrics.record_follow_up(FollowUpProvenance.NONE.value)
            return FollowUpResult.none()

        questions = extract_follow_ups(variables or {}, self.variable_prefix)
        if not questions:
            self._metrics.record_follow_up(FollowUpProvenance.NONE.value)
            return FollowUpResult.none()

        await self._clear(opts)
        log_stage(logger, "5.2", "Follow-ups read from side channel", client_id=client_id, count=len(questions))
        self._metrics.record_follow_up(FollowUpProvenance.FROM_SIDE_CHANNEL.value)
        return FollowUpResult(questions=questions, provenance=FollowUpProvenance.FROM_SIDE_CHANNEL)

    async def _clear(self, opts: VariableOptions) -> bool:
        empty = {name: "" for name in self.variable_names}
        for attempt in range(1, self.clear_attempts + 1):
            try:
                if await self._client.set_variables(empty, opts):
                    return True
                logger.warning("Follow-up clear rejected", client_id=opts.client_id, attempt=attempt)
            except Exception as e:
                logger.warning("Follow-up clear failed", client_id=opts.client_id, attempt=attempt, error=str(e))
        logger.error("Giving up clearing follow-up variables", client_id=opts.client_id, attempts=self.clear_attempts)
        return False
