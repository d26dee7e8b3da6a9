import asyncio
import logging
import signal

from beadq.exceptions import BrokerUnavailable
from beadq.pipeline import Pipeline
from beadq.worker import CompletedHook, FailedHook, WorkerPool


logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_BROKER_UNAVAILABLE = 1

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class PipelineRunner:
    """Runs every stage of a pipeline until a shutdown signal arrives.

    The sequence is: connect to the broker (exit code 1 if it cannot be
    reached), start one worker pool per stage, wait for SIGTERM or SIGINT
    (or ``request_stop()``), stop leasing, give in-flight jobs
    ``grace_timeout`` seconds to be acknowledged, and close the broker.

    Examples:

        >>> runner = PipelineRunner(pipeline, grace_timeout=30)
        >>> exit_code = asyncio.run(runner.run())
    """

    def __init__(
        self,
        pipeline: Pipeline,
        grace_timeout: float = 30,
        poll_interval: int = 1000,
        reconnect_delay: int = 5000,
        concurrency: dict[str, int] | None = None,
        on_completed: CompletedHook | None = None,
        on_failed: FailedHook | None = None,
        handle_signals: bool = True,
    ) -> None:
        self.pipeline = pipeline
        self.grace_timeout = grace_timeout
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.concurrency = concurrency
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.handle_signals = handle_signals

        self.pools: list[WorkerPool] = []
        self.drained: bool | None = None
        self.stop_event = asyncio.Event()

    def request_stop(self, signal_name: str | None = None) -> None:
        if signal_name:
            logger.info(f"Received {signal_name}, shutting down gracefully")
        self.stop_event.set()

    async def run(self) -> int:
        """Run until stopped.

        Returns:
            int: Process exit code.
        """
        broker = self.pipeline.broker
        try:
            await broker.connect()
        except BrokerUnavailable as exc:
            logger.error(f"Cannot reach the broker at startup: {exc}")
            return EXIT_BROKER_UNAVAILABLE

        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop) if self.handle_signals else []
        try:
            self.pools = self.pipeline.build_pools(
                poll_interval=self.poll_interval,
                reconnect_delay=self.reconnect_delay,
                concurrency=self.concurrency,
                on_completed=self.on_completed,
                on_failed=self.on_failed,
            )
            for pool in self.pools:
                pool.start()

            await self.stop_event.wait()

            results = await asyncio.gather(
                *(pool.shutdown(self.grace_timeout) for pool in self.pools)
            )
            self.drained = all(results)
            if not self.drained:
                logger.warning(
                    "Some jobs did not finish within the grace period, "
                    "they will be redelivered after their lease expires"
                )
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await broker.close()

        logger.info("Shutdown complete")
        return EXIT_OK

    def _install_signal_handlers(
        self, loop: asyncio.AbstractEventLoop
    ) -> list[signal.Signals]:
        installed = []
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                logger.debug(f"Cannot install a handler for {sig.name}")
                continue
            installed.append(sig)
        return installed
