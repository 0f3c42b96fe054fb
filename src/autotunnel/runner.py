"""Foreground runtime: supervisor, monitors and signal handling."""

import asyncio
import signal

from .common.exceptions import ConfigError
from .common.logging import get_logger
from .config import load_config
from .context import TunnelContext
from .monitors import build_monitors
from .supervisor import SessionSupervisor
from .supervisor.metrics import MetricsFile
from .transport import Transport

logger = get_logger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def reload_from_disk(supervisor: SessionSupervisor) -> bool:
    """Re-read the config file and hand it to the supervisor.

    A bad file is logged and the running settings are kept.
    """
    path = supervisor.context.config_path
    if path is None:
        logger.warning("Reload requested but no config path is known")
        return False
    try:
        settings = load_config(path)
    except ConfigError as e:
        supervisor.context.event_log.error("Reload failed", reason=str(e))
        return False
    supervisor.reload(settings)
    return True


def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
    supervisor: SessionSupervisor,
) -> list[signal.Signals]:
    installed = []
    handlers = [(sig, stop_event.set) for sig in STOP_SIGNALS]
    if hasattr(signal, "SIGHUP"):
        handlers.append((signal.SIGHUP, lambda: reload_from_disk(supervisor)))
    for sig, handler in handlers:
        try:
            loop.add_signal_handler(sig, handler)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler unavailable", signal=sig.name)
            continue
        installed.append(sig)
    return installed


async def serve(
    context: TunnelContext,
    transport: Transport,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Run the tunnel until ``stop_event`` is set or a stop signal arrives."""
    loop = asyncio.get_running_loop()
    stop_event = stop_event or asyncio.Event()

    metrics_file = MetricsFile(context.metrics_path)
    unsubscribe = context.metrics.broadcaster.subscribe(metrics_file.save)

    async with SessionSupervisor(context, transport) as supervisor:
        installed = _install_signal_handlers(loop, stop_event, supervisor)
        monitors = build_monitors(context.settings, supervisor.post)
        for monitor in monitors:
            monitor.start()
        supervisor.start()
        try:
            await stop_event.wait()
        finally:
            for monitor in monitors:
                monitor.stop()
            for sig in installed:
                loop.remove_signal_handler(sig)
            supervisor.stop()

    unsubscribe()
    logger.info("Tunnel shut down")
