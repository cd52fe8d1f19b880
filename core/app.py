import asyncio
import signal
import sys

from dotenv import load_dotenv

from core.liveness import LivenessSupervisor
from core.registry import RoomRegistry
from core.upstreams import UpstreamRouter
from services.kick.runtime.supervisor import KickSupervisor
from services.relay_api.server import RelayServer
from services.twitch.workers.chat_worker import TwitchUpstream
from shared.config.relay import load_relay_config
from shared.logging.logger import get_logger

log = get_logger("core.app")


async def main(stop_event: asyncio.Event):
    # --------------------------------------------------
    # ENV + CONFIG
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")
    log.info("Chat relay booting")

    config = load_relay_config()

    # --------------------------------------------------
    # CORE SYSTEMS
    # --------------------------------------------------
    registry = RoomRegistry()
    router = UpstreamRouter(
        registry,
        idle_eviction_seconds=config.upstream.idle_eviction_seconds,
    )
    tasks = []

    # --------------------------------------------------
    # UPSTREAM ADAPTERS (CONFIG-GATED)
    # --------------------------------------------------
    twitch = None
    if config.twitch.enabled:
        twitch = TwitchUpstream(registry=registry, config=config.twitch)
        router.register("twitch", twitch)
        tasks.append(asyncio.create_task(twitch.run()))
    else:
        log.info("Twitch upstream DISABLED by config")

    kick = None
    if config.kick.enabled:
        kick = KickSupervisor(registry=registry, config=config.kick)
        router.register("kick", kick)
    else:
        log.info("Kick upstream DISABLED by config")

    # --------------------------------------------------
    # DOWNSTREAM SERVER + LIVENESS
    # --------------------------------------------------
    server = RelayServer(config.server, registry)
    await server.start()

    liveness = LivenessSupervisor(registry, interval=config.server.ping_interval)
    tasks.append(asyncio.create_task(liveness.run()))

    # --------------------------------------------------
    # BLOCK UNTIL SHUTDOWN SIGNAL
    # --------------------------------------------------
    await stop_event.wait()

    log.info("Shutdown initiated")
    log.info(f"Rooms at shutdown: {registry.snapshot()}")

    # --------------------------------------------------
    # ORDERLY SHUTDOWN (DOWNSTREAM FIRST)
    # --------------------------------------------------
    try:
        await server.stop()
    except Exception as e:
        log.warning(f"Relay server shutdown error ignored: {e}")

    router.shutdown()

    if twitch:
        try:
            await twitch.shutdown()
        except Exception as e:
            log.warning(f"Twitch shutdown error ignored: {e}")

    if kick:
        try:
            await kick.shutdown()
        except Exception as e:
            log.warning(f"Kick shutdown error ignored: {e}")

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    log.info("Chat relay stopped")


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Windows-safe Ctrl+C handler.
    Uses signal.signal + asyncio.Event to unwind cleanly.
    """

    def _handler(signum, frame):
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except RuntimeError:
            stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except (ValueError, OSError) as e:
        log.debug(f"Signal handlers not installed: {e}")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run():
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    stop_event = asyncio.Event()
    _install_signal_handlers(loop, stop_event)

    try:
        loop.run_until_complete(main(stop_event))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

        loop.run_until_complete(loop.shutdown_asyncgens())

        asyncio.set_event_loop(None)
        loop.close()


if __name__ == "__main__":
    run()
    sys.exit(0)
