"""Command-line entry point: load config, start listeners, wait for a signal."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import threading
from typing import Callable, List, Optional

from .config.config_parser import (
    DEFAULT_CONFIG_PATH,
    build_cache,
    build_pipeline,
    normalize_listen_config,
    parse_config_file,
)
from .config.logging_config import init_logging
from .servers.tcp_server import serve_tcp, serve_tcp_threaded
from .servers.udp_server import DNSServer


class _TCPListener:
    """Brief: Runs serve_tcp on a private event loop in a daemon thread.

    Inputs:
      - host, port: Listen address.
      - resolver: Callable mapping (query_bytes, client_ip) -> response_bytes.

    Outputs:
      - Listener with start()/stop()/is_alive() and an `error` attribute set
        when the server exits with an exception.
    """

    def __init__(self, host: str, port: int, resolver: Callable[[bytes, str], bytes]):
        self.host = host
        self.port = port
        self.resolver = resolver
        self.error: Optional[BaseException] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        try:
            self._loop = asyncio.new_event_loop()
        except PermissionError:
            # Environment forbids the asyncio self-pipe; use the threaded server.
            logging.getLogger("tierdns.main").warning(
                "Asyncio loop creation failed; using threaded TCP listener"
            )
            self._thread = threading.Thread(
                target=self._run_threaded, name="tierdns-tcp", daemon=True
            )
            self._thread.start()
            return

        self._task = self._loop.create_task(
            serve_tcp(self.host, self.port, self.resolver)
        )
        self._thread = threading.Thread(
            target=self._run, name="tierdns-tcp", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        assert self._loop is not None and self._task is not None
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._task)
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            self.error = exc
        finally:
            self._loop.close()

    def _run_threaded(self) -> None:
        try:
            serve_tcp_threaded(self.host, self.port, self.resolver)
        except Exception as exc:
            self.error = exc

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        if self._loop is not None and self._task is not None and self.is_alive():
            self._loop.call_soon_threadsafe(self._task.cancel)
        if self._thread is not None:
            self._thread.join(timeout=timeout)


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the DNS server.
    Parses arguments, loads configuration, builds the resolution pipeline and
    runs the UDP/TCP listeners until a termination signal arrives.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown, 1 on configuration, cache
        connection, or listener failure.

    Example use:
        CLI:
            tierdns --config ./config/config.yaml -v UPSTREAM=1.1.1.1:53
    """
    parser = argparse.ArgumentParser(
        description="Authoritative/caching DNS forwarder with a shared cache"
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config"
    )
    parser.add_argument(
        "-v",
        "--var",
        dest="vars",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable (overrides environment and config vars)",
    )
    args = parser.parse_args(argv)

    try:
        cfg = parse_config_file(args.config, cli_vars=args.vars)
    except (OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    init_logging(cfg.get("logging"))
    logger = logging.getLogger("tierdns.main")
    logger.info("Loaded config from %s", args.config)

    try:
        cache = build_cache(cfg)
        pipeline = build_pipeline(cfg, cache=cache)
    except (ValueError, TypeError, KeyError, ImportError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    # The only process-fatal condition after config: an unreachable cache.
    if not cache.ping():
        logger.error(
            "Could not connect to cache backend %s; please ensure it is running",
            type(cache).__name__,
        )
        cache.close()
        return 1
    logger.info("Successfully connected to cache backend %s", type(cache).__name__)
    logger.info(
        "Serving %d static names; upstream %s (%s, timeout %dms)",
        len(pipeline.records),
        pipeline.upstream.address,
        pipeline.upstream.transport,
        pipeline.upstream.timeout_ms,
    )
    logger.debug("Static names: %s", ", ".join(sorted(pipeline.records.names())))

    listen = normalize_listen_config(cfg)
    if not listen["udp"]["enabled"] and not listen["tcp"]["enabled"]:
        logger.error("Both UDP and TCP listeners are disabled; nothing to serve")
        cache.close()
        return 1

    shutdown_event = threading.Event()

    def _request_shutdown(signum, _frame) -> None:
        logger.info(
            "Received %s, initiating shutdown", signal.Signals(signum).name
        )
        shutdown_event.set()

    for signame in ("SIGTERM", "SIGINT", "SIGHUP"):
        sig = getattr(signal, signame, None)
        if sig is None:
            continue
        try:
            signal.signal(sig, _request_shutdown)
        except (ValueError, OSError):
            logger.warning("Could not install %s handler", signame)

    exit_code = 0
    udp_server: Optional[DNSServer] = None
    udp_thread: Optional[threading.Thread] = None
    udp_error: List[BaseException] = []
    tcp_listener: Optional[_TCPListener] = None

    try:
        if listen["udp"]["enabled"]:
            uhost, uport = listen["udp"]["host"], listen["udp"]["port"]
            try:
                udp_server = DNSServer(uhost, uport, pipeline.handle_udp)
            except OSError as exc:
                logger.error("Failed to start UDP listener on %s:%d: %s", uhost, uport, exc)
                return 1

            def _run_udp() -> None:
                try:
                    udp_server.serve_forever()
                except Exception as e:
                    udp_error.append(e)

            logger.info("Listening on UDP %s:%d", uhost, uport)
            udp_thread = threading.Thread(
                target=_run_udp, name="tierdns-udp", daemon=True
            )
            udp_thread.start()

        if listen["tcp"]["enabled"]:
            thost, tport = listen["tcp"]["host"], listen["tcp"]["port"]
            logger.info("Listening on TCP %s:%d", thost, tport)
            tcp_listener = _TCPListener(thost, tport, pipeline.handle)
            tcp_listener.start()

        logger.info("Startup completed")

        while not shutdown_event.wait(1.0):
            if udp_error:
                logger.error("UDP listener failed: %s", udp_error[0])
                exit_code = 1
                break
            if udp_thread is not None and not udp_thread.is_alive():
                break
            if tcp_listener is not None and not tcp_listener.is_alive():
                if tcp_listener.error is not None:
                    logger.error("TCP listener failed: %s", tcp_listener.error)
                    exit_code = 1
                break
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        if udp_server is not None and udp_thread is not None:
            udp_server.stop()
            udp_thread.join(timeout=5.0)
        if tcp_listener is not None:
            tcp_listener.stop()
        cache.close()
        logger.info("Shutdown complete")

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
