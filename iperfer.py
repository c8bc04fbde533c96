#!/usr/bin/env python3
"""
iperfer.py

Point-to-point throughput probe.

- Server mode: accepts one measurement session at a time (responder).
- Client mode: connects, measures RTT, then saturates the link for a fixed
  duration and estimates the achieved bandwidth (prober).

A session runs in two phases over one reliable byte stream:
  - rtt: 1-byte probe -> 1-byte ack, repeated a fixed number of rounds.
  - transfer: fixed-size chunks from the client, a 1-byte ack per chunk
    from the server, until the client's timer expires and it half-closes.

Both sides report Rate = bits / (elapsed - RTT) in decimal Mbit/s.
The stream is either TCP or a single QUIC stream (aioquic).
"""

import argparse
import asyncio
import logging
import ssl
import statistics
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

# QUIC dependencies
from aioquic.asyncio import serve, connect
from aioquic.quic.configuration import QuicConfiguration

logger = logging.getLogger(__name__)


# -----------------------------
# Size parsing
# -----------------------------

def parse_size(s: str) -> int:
    """Parse human-readable size (e.g., '80K', '1M', '4096') to bytes."""
    s = s.strip().upper()
    units = {'B': 1, 'K': 1024, 'KB': 1024, 'M': 1024**2, 'MB': 1024**2}
    for suffix, mult in sorted(units.items(), key=lambda x: -len(x[0])):
        if s.endswith(suffix):
            return int(float(s[:-len(suffix)]) * mult)
    return int(s)  # Assume bytes if no suffix


# -----------------------------
# Protocol constants
# -----------------------------

DEFAULT_CHUNK_SIZE = 80 * 1024
PROBE_TAG = b"M"
ACK_TAG = b"A"
RTT_ROUNDS = 8
# Samples discarded before averaging; both roles use the same count.
WARMUP_ROUNDS = 3

MIN_PORT = 1024
MAX_PORT = 65535
DEFAULT_PORT = 5000
ALPN = "iperfer"


class Role(Enum):
    PROBER = "prober"
    RESPONDER = "responder"


class Phase(Enum):
    LISTENING = "listening"
    CONNECTING = "connecting"
    PROBING_RTT = "probing-rtt"
    TRANSFERRING = "transferring"
    REPORTING = "reporting"
    CLOSED = "closed"


@dataclass(frozen=True)
class ProtocolConfig:
    """Values both peers must agree on before connecting."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    rtt_rounds: int = RTT_ROUNDS
    warmup_rounds: int = WARMUP_ROUNDS
    probe_tag: bytes = PROBE_TAG
    ack_tag: bytes = ACK_TAG
    io_timeout: Optional[float] = None

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.rtt_rounds < 2:
            raise ValueError(f"rtt_rounds must be >= 2, got {self.rtt_rounds}")
        # the responder records one sample fewer than rtt_rounds
        if not 0 <= self.warmup_rounds < self.rtt_rounds - 1:
            raise ValueError(
                f"warmup_rounds must be in [0, {self.rtt_rounds - 1}), got {self.warmup_rounds}")
        if len(self.probe_tag) != 1 or len(self.ack_tag) != 1:
            raise ValueError("probe_tag and ack_tag must be single bytes")
        if self.io_timeout is not None and self.io_timeout <= 0:
            raise ValueError(f"io_timeout must be positive, got {self.io_timeout}")


# -----------------------------
# Errors
# -----------------------------

class ProbeError(Exception):
    """Base class for session failures; `phase` is where it surfaced."""

    kind = "probe error"

    def __init__(self, message: str, phase: Optional[Phase] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase

    def __str__(self):
        if self.phase is None:
            return f"{self.kind}: {self.message}"
        return f"{self.kind} during {self.phase.value}: {self.message}"


class ConnectionSetupError(ProbeError):
    kind = "connection error"


class TransportError(ProbeError):
    kind = "transport error"


class IOTimeoutError(TransportError):
    kind = "timeout"


class ProtocolViolation(ProbeError):
    kind = "protocol violation"


class MeasurementError(ProbeError):
    kind = "could not measure"


# -----------------------------
# Common data structures
# -----------------------------

@dataclass
class TransferAccounting:
    """Byte and time counters for one bulk-transfer phase."""
    bytes_transferred: int = 0
    chunks: int = 0
    elapsed: float = 0.0
    finalized: bool = False

    def add_chunk(self, nbytes: int) -> None:
        if self.finalized:
            raise RuntimeError("transfer accounting already finalized")
        self.bytes_transferred += nbytes
        self.chunks += 1

    def finalize(self, elapsed: float) -> None:
        if self.finalized:
            raise RuntimeError("transfer accounting already finalized")
        self.elapsed = elapsed
        self.finalized = True

    @property
    def kbytes(self) -> int:
        return self.bytes_transferred // 1000


@dataclass(frozen=True)
class SessionReport:
    role: Role
    kbytes: int
    bytes_transferred: int
    elapsed: float
    rate_mbps: float
    rtt_ms: float
    rtt_samples: List[float] = field(default_factory=list)

    def summary(self) -> str:
        label = "Sent" if self.role is Role.PROBER else "Received"
        return (f"{label}={self.kbytes} KB, Rate={self.rate_mbps:.3f} Mbps, "
                f"RTT={self.rtt_ms:.3f}ms")


# -----------------------------
# Estimators
# -----------------------------

def estimate_rtt(samples: Sequence[float], warmup: int = WARMUP_ROUNDS) -> float:
    """Mean of `samples` (ms) after dropping the first `warmup` entries."""
    retained = list(samples[warmup:])
    if not retained:
        raise MeasurementError(
            f"no RTT samples left after discarding {warmup} warm-up rounds "
            f"(got {len(samples)})"
        )
    return statistics.fmean(retained)


def compute_bandwidth(total_bytes: int, elapsed: float, rtt_ms: float) -> float:
    """
    Bandwidth in Mbit/s (decimal units).

    One RTT of propagation delay is taken off the elapsed window; the rest
    is treated as transmission time.
    """
    if total_bytes <= 0:
        raise MeasurementError("no data was transferred")
    effective = elapsed - rtt_ms / 1000
    if effective <= 0:
        raise MeasurementError(
            f"effective transmission time is not positive "
            f"(elapsed {elapsed:.6f}s, rtt {rtt_ms:.3f}ms)"
        )
    return (total_bytes * 8 / 1e6) / effective


# -----------------------------
# Byte stream
# -----------------------------

class ByteStream:
    """
    Reader/writer pair with error translation and an optional deadline
    on every read and write.

    Works for TCP connections and QUIC streams alike. QUIC stream writers
    never see connection_lost, so `wait_closed` must be skipped for them.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 io_timeout: Optional[float] = None, wait_closed: bool = True):
        self.reader = reader
        self.writer = writer
        self.io_timeout = io_timeout
        self._wait_closed = wait_closed
        self._closed = False

    async def _deadline(self, aw, what: str):
        if self.io_timeout is None:
            return await aw
        try:
            return await asyncio.wait_for(aw, timeout=self.io_timeout)
        except asyncio.TimeoutError:
            raise IOTimeoutError(f"{what} did not complete within {self.io_timeout}s")

    async def send_all(self, data) -> None:
        # StreamWriter buffers partial sends; drain waits until it is flushed.
        try:
            self.writer.write(data)
            await self._deadline(self.writer.drain(), "send")
        except (ConnectionError, OSError) as e:
            raise TransportError(f"send failed: {e}")

    async def read_some(self, max_bytes: int) -> bytes:
        """Up to `max_bytes`; b"" only at end of stream."""
        try:
            return await self._deadline(self.reader.read(max_bytes), "receive")
        except (ConnectionError, OSError) as e:
            raise TransportError(f"receive failed: {e}")

    async def read_tag(self, expected: bytes, what: str) -> None:
        data = await self.read_some(1)
        if not data:
            raise ProtocolViolation(f"peer closed the stream while waiting for {what}")
        if data != expected:
            raise ProtocolViolation(f"expected {what} {expected!r}, got {data!r}")

    async def close_write(self) -> None:
        try:
            if self.writer.can_write_eof():
                self.writer.write_eof()
                await self._deadline(self.writer.drain(), "half-close")
        except (ConnectionError, OSError) as e:
            raise TransportError(f"half-close failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        if not self._wait_closed:
            return
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("close: %s", e)


# -----------------------------
# RTT phase
# -----------------------------

async def probe_rtt(stream: ByteStream, config: ProtocolConfig,
                    clock: Callable[[], float] = time.perf_counter) -> List[float]:
    """Prober side: time `rtt_rounds` probe/ack exchanges, in ms."""
    samples: List[float] = []
    for i in range(config.rtt_rounds):
        t0 = clock()
        await stream.send_all(config.probe_tag)
        await stream.read_tag(config.ack_tag, "RTT ack")
        t1 = clock()
        samples.append((t1 - t0) * 1000)
        logger.debug("RTT%d: %.3f ms", i, samples[-1])
    return samples


async def answer_rtt(stream: ByteStream, config: ProtocolConfig,
                     clock: Callable[[], float] = time.perf_counter) -> List[float]:
    """
    Responder side: ack every probe, timing each ack -> next probe.

    Yields `rtt_rounds - 1` samples; the first probe has nothing to time
    against and the last ack has no probe after it.
    """
    samples: List[float] = []
    await stream.read_tag(config.probe_tag, "RTT probe")
    for i in range(config.rtt_rounds - 1):
        t0 = clock()
        await stream.send_all(config.ack_tag)
        await stream.read_tag(config.probe_tag, "RTT probe")
        t1 = clock()
        samples.append((t1 - t0) * 1000)
        logger.debug("RTT%d: %.3f ms", i, samples[-1])
    await stream.send_all(config.ack_tag)
    return samples


# -----------------------------
# Bulk-transfer phase
# -----------------------------

async def send_bulk(stream: ByteStream, config: ProtocolConfig, duration: float,
                    clock: Callable[[], float] = time.perf_counter) -> TransferAccounting:
    """
    Prober side: send full chunks, waiting for each ack, until `duration`
    seconds have passed. The timer is only checked between chunks.
    """
    accounting = TransferAccounting()
    payload = bytes(config.chunk_size)

    start = clock()
    deadline = start + duration
    while clock() < deadline:
        await stream.send_all(payload)
        await stream.read_tag(config.ack_tag, "chunk ack")
        accounting.add_chunk(len(payload))
    accounting.finalize(clock() - start)

    await stream.close_write()
    logger.debug("sent %d chunks (%d bytes) in %.3fs",
                 accounting.chunks, accounting.bytes_transferred, accounting.elapsed)
    return accounting


async def receive_bulk(stream: ByteStream, config: ProtocolConfig,
                       clock: Callable[[], float] = time.perf_counter) -> TransferAccounting:
    """
    Responder side: read chunks until end of stream, acking each full one.

    Short reads are kept in the buffer and the loop goes on; only an empty
    read ends the phase.
    """
    accounting = TransferAccounting()
    buffer = bytearray(config.chunk_size)
    view = memoryview(buffer)
    capacity = len(buffer)
    start: Optional[float] = None
    open_ = True

    while open_:
        filled = 0
        while filled < capacity:
            data = await stream.read_some(capacity - filled)
            if not data:
                open_ = False
                break
            if start is None:
                start = clock()
            if filled + len(data) > capacity:
                raise ProtocolViolation(
                    f"read of {len(data)} bytes overflows chunk buffer at {filled}/{capacity}"
                )
            view[filled:filled + len(data)] = data
            filled += len(data)

        if filled == capacity:
            accounting.add_chunk(filled)
            await stream.send_all(config.ack_tag)
        elif filled:
            # Trailing partial chunk: counted, not acked; the peer has stopped reading acks.
            logger.warning("stream ended mid-chunk (%d/%d bytes)", filled, capacity)
            accounting.add_chunk(filled)

    end = clock()
    accounting.finalize(end - start if start is not None else 0.0)
    logger.debug("received %d chunks (%d bytes) in %.3fs",
                 accounting.chunks, accounting.bytes_transferred, accounting.elapsed)
    return accounting


# -----------------------------
# Session
# -----------------------------

class MeasurementSession:
    """
    One measurement over one stream, for either role.

    rtt probe -> bulk transfer -> report. The prober drives both phases;
    the responder echoes acks and counts what arrives.
    """

    def __init__(self, role: Role, stream: ByteStream, config: ProtocolConfig,
                 duration: Optional[float] = None):
        if role is Role.PROBER and (duration is None or duration <= 0):
            raise ValueError("prober needs a positive duration")
        self.role = role
        self.stream = stream
        self.config = config
        self.duration = duration
        self.phase = Phase.CONNECTING

    def _enter(self, phase: Phase) -> None:
        logger.debug("[%s] %s -> %s", self.role.value, self.phase.value, phase.value)
        self.phase = phase

    async def run(self) -> SessionReport:
        try:
            self._enter(Phase.PROBING_RTT)
            if self.role is Role.PROBER:
                samples = await probe_rtt(self.stream, self.config)
            else:
                samples = await answer_rtt(self.stream, self.config)
            rtt_ms = estimate_rtt(samples, self.config.warmup_rounds)
            logger.debug("[%s] RTT estimate %.3f ms", self.role.value, rtt_ms)

            self._enter(Phase.TRANSFERRING)
            if self.role is Role.PROBER:
                accounting = await send_bulk(self.stream, self.config, self.duration)
            else:
                accounting = await receive_bulk(self.stream, self.config)

            self._enter(Phase.REPORTING)
            rate = compute_bandwidth(accounting.bytes_transferred,
                                     accounting.elapsed, rtt_ms)
            return SessionReport(
                role=self.role,
                kbytes=accounting.kbytes,
                bytes_transferred=accounting.bytes_transferred,
                elapsed=accounting.elapsed,
                rate_mbps=rate,
                rtt_ms=rtt_ms,
                rtt_samples=samples,
            )
        except ProbeError as e:
            if e.phase is None:
                e.phase = self.phase
            raise
        finally:
            await self.stream.close()
            self._enter(Phase.CLOSED)


# -----------------------------
# QUIC configuration
# -----------------------------

def build_quic_configuration(is_client: bool,
                             server_name: Optional[str] = None,
                             cert: Optional[str] = None,
                             key: Optional[str] = None,
                             verify: bool = False) -> QuicConfiguration:
    configuration = QuicConfiguration(
        is_client=is_client,
        alpn_protocols=[ALPN],
        server_name=server_name,
    )
    if is_client:
        # For lab measurements we usually allow self-signed certs
        if not verify:
            configuration.verify_mode = ssl.CERT_NONE
    else:
        try:
            configuration.load_cert_chain(cert, key)
        except (OSError, ValueError) as e:
            raise ConnectionSetupError(f"cannot load QUIC certificate {cert!r}: {e}",
                                       Phase.LISTENING)
    return configuration


# -----------------------------
# SERVER (responder)
# -----------------------------

class Responder:
    """
    Runs responder sessions for incoming streams, one at a time.

    A failed session is logged and counted; the next one starts clean.
    """

    def __init__(self, config: ProtocolConfig, protocol: str = "tcp",
                 once: bool = False):
        self.config = config
        self.protocol = protocol
        self.once = once
        self.reports: List[SessionReport] = []
        self.failures = 0
        self.done = asyncio.Event()
        self._lock = asyncio.Lock()
        self._tasks = set()

    async def handle(self, reader: asyncio.StreamReader,
                     writer: asyncio.StreamWriter) -> Optional[SessionReport]:
        stream = ByteStream(reader, writer, self.config.io_timeout,
                            wait_closed=(self.protocol == "tcp"))
        async with self._lock:
            if self.once and self.done.is_set():
                await stream.close()
                return None
            addr = writer.get_extra_info("peername")
            logger.info("[%s] session from %s", self.protocol.upper(), addr)
            session = MeasurementSession(Role.RESPONDER, stream, self.config)
            report = None
            try:
                report = await session.run()
            except ProbeError as e:
                self.failures += 1
                logger.error("[%s] session from %s failed: %s",
                             self.protocol.upper(), addr, e)
            except Exception:
                self.failures += 1
                logger.exception("[%s] session from %s crashed",
                                 self.protocol.upper(), addr)
            else:
                self.reports.append(report)
                print(f"[{self.protocol.upper()}] {report.summary()}", flush=True)
            if self.once:
                self.done.set()
            return report

    def spawn(self, reader: asyncio.StreamReader,
              writer: asyncio.StreamWriter) -> None:
        """Stream callback for aioquic, which does not await handlers."""
        task = asyncio.ensure_future(self.handle(reader, writer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def exit_status(self) -> int:
        return 1 if self.failures else 0


async def run_tcp_server(host: str, port: int, responder: Responder) -> None:
    try:
        server = await asyncio.start_server(responder.handle, host, port)
    except OSError as e:
        raise ConnectionSetupError(f"cannot listen on {host}:{port}: {e}",
                                   Phase.LISTENING)
    addr = ", ".join(str(s.getsockname()) for s in server.sockets)
    logger.info("[TCP] server listening on %s", addr)
    async with server:
        if responder.once:
            await responder.done.wait()
        else:
            await server.serve_forever()


async def run_quic_server(host: str, port: int, responder: Responder,
                          cert: str, key: str) -> None:
    configuration = build_quic_configuration(is_client=False, cert=cert, key=key)
    try:
        server = await serve(
            host,
            port,
            configuration=configuration,
            stream_handler=responder.spawn,
        )
    except OSError as e:
        raise ConnectionSetupError(f"cannot listen on {host}:{port}: {e}",
                                   Phase.LISTENING)
    logger.info("[QUIC] server listening on %s:%d", host, port)
    try:
        if responder.once:
            await responder.done.wait()
        else:
            await asyncio.Event().wait()
    finally:
        server.close()


# -----------------------------
# CLIENT (prober)
# -----------------------------

async def run_tcp_client(host: str, port: int, duration: float,
                         config: ProtocolConfig) -> SessionReport:
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as e:
        raise ConnectionSetupError(f"cannot connect to {host}:{port}: {e}",
                                   Phase.CONNECTING)
    logger.debug("connected to %s:%d", host, port)
    stream = ByteStream(reader, writer, config.io_timeout)
    return await MeasurementSession(Role.PROBER, stream, config, duration).run()


async def run_quic_client(host: str, port: int, duration: float,
                          config: ProtocolConfig,
                          verify: bool = False) -> SessionReport:
    configuration = build_quic_configuration(is_client=True, server_name=host,
                                             verify=verify)
    try:
        async with connect(host, port, configuration=configuration) as client:
            reader, writer = await client.create_stream()
            stream = ByteStream(reader, writer, config.io_timeout, wait_closed=False)
            session = MeasurementSession(Role.PROBER, stream, config, duration)
            return await session.run()
    except ProbeError:
        raise
    except (OSError, ConnectionError) as e:
        raise ConnectionSetupError(f"QUIC connection to {host}:{port} failed: {e}",
                                   Phase.CONNECTING)


# -----------------------------
# CLI / MAIN
# -----------------------------

def port_type(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"port must be an integer, got {value!r}")
    if not MIN_PORT <= port <= MAX_PORT:
        raise argparse.ArgumentTypeError(
            f"port number must be in the range of [{MIN_PORT}, {MAX_PORT}]")
    return port


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number, got {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"value must be greater than 0, got {value}")
    return number


def size_type(value: str) -> int:
    try:
        size = parse_size(value)
    except (ValueError, OverflowError):
        raise argparse.ArgumentTypeError(f"invalid size {value!r}")
    if size <= 0:
        raise argparse.ArgumentTypeError(f"size must be greater than 0, got {value}")
    return size


def parse_args(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        prog="iperfer",
        description="Tool to estimate throughput between hosts.",
    )
    subparsers = parser.add_subparsers(dest="role", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-p", "--port", type=port_type, default=DEFAULT_PORT,
                        help=f"Port number [{MIN_PORT}-{MAX_PORT}] (default: {DEFAULT_PORT})")
    common.add_argument("--protocol", choices=["tcp", "quic"], default="tcp",
                        help="Transport carrying the session (default: tcp)")
    common.add_argument("--chunk-size", type=size_type, default=DEFAULT_CHUNK_SIZE,
                        help="Bulk chunk size, must match the peer (default: 80K)")
    common.add_argument("--io-timeout", type=positive_float, default=None,
                        help="Fail if a single read/write blocks longer than this (seconds)")
    common.add_argument("-v", "--verbose", action="store_true",
                        help="Log RTT samples and phase changes")

    # Server
    sp_server = subparsers.add_parser("server", parents=[common],
                                      help="Run in server mode")
    sp_server.add_argument("--host", default="0.0.0.0",
                           help="Bind address (default: 0.0.0.0)")
    sp_server.add_argument("--once", action="store_true",
                           help="Exit after one session, with its status")
    sp_server.add_argument("--quic-cert", default="cert.pem",
                           help="QUIC TLS certificate file")
    sp_server.add_argument("--quic-key", default="key.pem",
                           help="QUIC TLS key file")

    # Client
    sp_client = subparsers.add_parser("client", parents=[common],
                                      help="Run in client mode")
    sp_client.add_argument("-H", "--server-host", required=True,
                           help="Server hostname or IP")
    sp_client.add_argument("-t", "--time", type=positive_float, required=True,
                           help="Time in seconds to transmit for")
    sp_client.add_argument("--verify-cert", action="store_true",
                           help="Verify the server's QUIC certificate")

    return parser.parse_args(argv)


def config_from_args(args) -> ProtocolConfig:
    return ProtocolConfig(chunk_size=args.chunk_size, io_timeout=args.io_timeout)


async def main_async(args) -> int:
    config = config_from_args(args)

    if args.role == "server":
        responder = Responder(config, protocol=args.protocol, once=args.once)
        if args.protocol == "tcp":
            await run_tcp_server(args.host, args.port, responder)
        else:
            await run_quic_server(args.host, args.port, responder,
                                  cert=args.quic_cert, key=args.quic_key)
        return responder.exit_status

    if args.protocol == "tcp":
        report = await run_tcp_client(args.server_host, args.port, args.time, config)
    else:
        report = await run_quic_client(args.server_host, args.port, args.time,
                                       config, verify=args.verify_cert)
    print(f"[{args.protocol.upper()}] {report.summary()}", flush=True)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger.info("Starting iperfer %s...", args.role)
    try:
        return asyncio.run(main_async(args))
    except ProbeError as e:
        logger.error("error: %s", e)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted, exiting.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
