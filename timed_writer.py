#!/usr/bin/env python3
"""
Timed Writer (Linux only)

Writes a block of data to a single file every so many seconds, for a bounded
number of iterations, and reports how long each write() took. Useful for
watching write latency and failure behaviour of a filesystem or device
(NFS/CIFS mounts, flaky disks, overloaded arrays) under a slow, steady load.

Features:
- Synchronous writes (O_SYNC) so every write reaches the device
- Optional exclusive advisory lock (flock) on the target file
- Wall-clock and CPU user/system time for each write() call
- Abort after too many consecutive write failures
- Latency summary once the run completes

Example usage: python3 timed_writer.py -s 1 -c 10 -l /mnt/nfs/probe.txt
"""

import os
import sys
import time
import fcntl
import argparse
import resource
from typing import Dict, List, Optional
from dataclasses import dataclass, field

import numpy as np


INTERVAL_DEFAULT = 5
INTERVAL_MIN = 1
INTERVAL_MAX = 60 * 60
ITERATION_MAX = 666
FAILURE_MAX = 100
FAILURE_DEFAULT = 5
BS_DEF = 1024
BS_MAX = 1024 * 1024 * 32

FILLER_BYTE = 0x0D  # carriage return


# ANSI color functions for consistent output
def red(text: str) -> str:
    """Format text in red ANSI color."""
    return f"\033[0;31m{text}\033[0m"


def green(text: str) -> str:
    """Format text in green ANSI color."""
    return f"\033[0;32m{text}\033[0m"


def yellow(text: str) -> str:
    """Format text in yellow ANSI color."""
    return f"\033[0;33m{text}\033[0m"


def blue(text: str) -> str:
    """Format text in blue (cyan) ANSI color."""
    return f"\033[0;36m{text}\033[0m"


def purple(text: str) -> str:
    """Format text in purple (magenta) ANSI color."""
    return f"\033[0;35m{text}\033[0m"


def error(text: str) -> None:
    """Print a diagnostic line in red to stderr."""
    print(red(text), file=sys.stderr)


@dataclass(frozen=True)
class RunConfig:
    """Validated parameters for a single timed-writer run."""

    filename: str
    interval: int = INTERVAL_DEFAULT
    iterations: int = ITERATION_MAX
    failmax: int = FAILURE_DEFAULT
    block_size: int = 0
    exclusive_lock: bool = False

    def __post_init__(self) -> None:
        """Range-check every numeric parameter.

        Raises:
            ValueError: If a parameter is outside its documented bounds
        """
        if not INTERVAL_MIN <= self.interval <= INTERVAL_MAX:
            raise ValueError(f"Invalid sleep time: {self.interval}")
        if not 0 < self.iterations <= ITERATION_MAX:
            raise ValueError(f"Invalid max iterations: {self.iterations}")
        if not 0 <= self.failmax <= FAILURE_MAX:
            raise ValueError(f"Invalid max consecutive write failures: {self.failmax}")
        if not 0 <= self.block_size <= BS_MAX:
            raise ValueError(f"Invalid write block size: {self.block_size}")


class WriteBuffer:
    """Scratch buffer reused by every write of a run."""

    def __init__(self, block_size: int) -> None:
        """Allocate the buffer and fill it with the filler byte.

        Args:
            block_size: Configured write size, 0 for index lines
        """
        self.block_size = block_size
        self._data = bytearray([FILLER_BYTE]) * max(block_size, BS_DEF)

    def __len__(self) -> int:
        return len(self._data)

    def stamp(self, index: int) -> int:
        """Write the decimal index line at the front of the buffer.

        Returns:
            Number of bytes to write for this iteration
        """
        line = f"{index}\n".encode("ascii")
        self._data[:len(line)] = line
        return self.block_size or len(line)

    def write_to(self, fd: int, size: int) -> int:
        """Issue a single write() of the first size bytes."""
        with memoryview(self._data) as view:
            return os.write(fd, view[:size])

    def release(self) -> None:
        self._data = bytearray()


@dataclass
class IterationResult:
    """Outcome and timing of one write() call."""

    index: int
    requested: int
    written: Optional[int]
    wall_seconds: float
    user_seconds: float
    sys_seconds: float
    error: Optional[OSError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def short(self) -> bool:
        """True when write() succeeded but wrote fewer bytes than asked."""
        return not self.failed and self.written != self.requested


class FailureStreak:
    """Counts consecutive write failures against a cap (0 = unlimited)."""

    def __init__(self, failmax: int) -> None:
        self.failmax = failmax
        self.count = 0

    def record_failure(self) -> bool:
        """Count a failure.

        Returns:
            True once the streak reaches the cap
        """
        if self.failmax == 0:
            return False
        self.count += 1
        return self.count >= self.failmax

    def reset(self) -> None:
        self.count = 0


@dataclass
class WriteStats:
    """Running totals for the end-of-run summary."""

    attempts: int = 0
    failures: int = 0
    short_writes: int = 0
    bytes_written: int = 0
    latencies: List[float] = field(default_factory=list)

    def record(self, result: IterationResult) -> None:
        self.attempts += 1
        if result.failed:
            self.failures += 1
            return
        if result.short:
            self.short_writes += 1
        self.bytes_written += result.written or 0
        self.latencies.append(result.wall_seconds)

    def latency_summary(self) -> Dict[str, float]:
        """Min, mean, 95th percentile and max latency of successful writes.

        Returns:
            Dictionary of latency figures in seconds, empty if nothing succeeded
        """
        if not self.latencies:
            return {}
        values = np.asarray(self.latencies, dtype=float)
        return {
            "min": float(np.min(values)),
            "mean": float(np.mean(values)),
            "p95": float(np.percentile(values, 95)),
            "max": float(np.max(values)),
        }

    def display(self) -> None:
        """Print the run summary."""
        print("")
        print(green("=== Run Summary ==="))
        print(f"{yellow('Writes attempted:')} {self.attempts}")
        print(f"{yellow('Writes failed:')} {self.failures}")
        print(f"{yellow('Short writes:')} {self.short_writes}")
        print(f"{yellow('Bytes written:')} {self.bytes_written}")
        summary = self.latency_summary()
        if summary:
            print(f"{yellow('Latency:')} min {summary['min']:.2f}s, "
                  f"mean {summary['mean']:.2f}s, p95 {summary['p95']:.2f}s, "
                  f"max {summary['max']:.2f}s")


class TimedWriter:
    """Periodic synchronous writer for a single target file."""

    def __init__(self, config: RunConfig) -> None:
        """Initialize the writer.

        Args:
            config: Validated run configuration
        """
        self.config = config
        self.streak = FailureStreak(config.failmax)
        self.stats = WriteStats()

    def display_parameters(self) -> None:
        """Display run parameters before the file is opened."""
        print(blue("=== Run Parameters ==="))
        print(f"{yellow('Filename:')} {self.config.filename}")
        print(f"{yellow('Exclusive lock:')} {'on' if self.config.exclusive_lock else 'off'}")
        print(f"{yellow('Sleep after each write:')} {self.config.interval}")
        print(f"{yellow('Max iterations:')} {self.config.iterations}")
        print(f"{yellow('Max consecutive write fails:')} {self.config.failmax}")
        print(f"{yellow('Write size:')} {self.config.block_size}")

    def _open(self) -> Optional[int]:
        """Create/truncate the target file for synchronous writing.

        Returns:
            File descriptor, or None if the file could not be opened
        """
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
        if hasattr(os, "O_SYNC"):
            flags |= os.O_SYNC
        try:
            return os.open(self.config.filename, flags, 0o666)
        except OSError as err:
            error(f"Unable to open {self.config.filename} : "
                  f"open() returned {err.errno} ({err.strerror})")
            return None

    def _lock(self, fd: int) -> bool:
        """Place an exclusive advisory lock on the open file, blocking until granted."""
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as err:
            error(f"Unable to place lock on {self.config.filename} : "
                  f"flock() returned {err.errno} ({err.strerror})")
            return False
        return True

    @staticmethod
    def write_once(fd: int, buffer: WriteBuffer, index: int) -> IterationResult:
        """Stamp the buffer, perform one timed write() and return its result.

        Args:
            fd: Open file descriptor
            buffer: Scratch buffer for the run
            index: Zero-based iteration number

        Returns:
            IterationResult with sizes and timings
        """
        requested = buffer.stamp(index)
        print(f"\nWriting sequence {index} ({requested} bytes)", flush=True)

        written: Optional[int] = None
        failure: Optional[OSError] = None
        wall_before = time.perf_counter()
        usage_before = resource.getrusage(resource.RUSAGE_SELF)
        try:
            written = buffer.write_to(fd, requested)
        except OSError as err:
            failure = err
        usage_after = resource.getrusage(resource.RUSAGE_SELF)
        wall_after = time.perf_counter()

        return IterationResult(
            index=index,
            requested=requested,
            written=written,
            wall_seconds=wall_after - wall_before,
            user_seconds=usage_after.ru_utime - usage_before.ru_utime,
            sys_seconds=usage_after.ru_stime - usage_before.ru_stime,
            error=failure,
        )

    def handle_result(self, result: IterationResult) -> None:
        """Report a write result and apply the consecutive-failure policy.

        Exits the process with status 1 when the failure cap is reached.
        """
        self.stats.record(result)

        if result.failed:
            err = result.error
            error(f"write() failed with errno {err.errno} ({err.strerror})")
            if self.streak.record_failure():
                error("Reached max failcount ... bye!")
                sys.exit(1)
        else:
            self.streak.reset()

        if result.short:
            print(yellow(f"write() returned {result.written} instead of "
                         f"{result.requested}. Interrupted?!!"), flush=True)

        timing = (f"write() took approx {result.wall_seconds:.2f} seconds "
                  f"(user: {result.user_seconds:.2f}; sys: {result.sys_seconds:.2f})")
        print(purple(timing), flush=True)

    def run(self) -> int:
        """Open, optionally lock, and write to the target file.

        Returns:
            0 when all iterations ran, 1 if the file could not be opened or locked
        """
        self.display_parameters()

        fd = self._open()
        if fd is None:
            return 1

        try:
            if self.config.exclusive_lock and not self._lock(fd):
                return 1

            buffer = WriteBuffer(self.config.block_size)
            try:
                for index in range(self.config.iterations):
                    self.handle_result(self.write_once(fd, buffer, index))
                    if index + 1 < self.config.iterations:
                        time.sleep(self.config.interval)
            finally:
                buffer.release()
        finally:
            # Closing also drops the flock
            os.close(fd)

        self.stats.display()
        return 0


def get_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        description="Writes a line to FILENAME with SLEEP seconds between writes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Example: %(prog)s /mnt/myfile.txt\n"
            "         %(prog)s -s 5 -c 100 -l /mnt/myexclusive.txt\n"
            "         %(prog)s -s 1 -c 10 -f 2 -b $((1024*1024)) -l /mnt/megwrite.txt"
        )
    )

    parser.add_argument(
        "filename", nargs="*", metavar="FILENAME",
        help="File to write to (created or truncated)"
    )

    parser.add_argument(
        "-s", "--sleep", type=int, default=INTERVAL_DEFAULT, metavar="SLEEP",
        help=(f"Seconds sleep after each iteration "
              f"(default: {INTERVAL_DEFAULT}; bounds: [{INTERVAL_MIN}, {INTERVAL_MAX}])")
    )

    parser.add_argument(
        "-c", "--count", type=int, default=ITERATION_MAX, metavar="MAX_ITER",
        help=f"Limit iterations to MAX_ITER <= {ITERATION_MAX} (default: {ITERATION_MAX})"
    )

    parser.add_argument(
        "-f", "--fail-max", type=int, default=FAILURE_DEFAULT, metavar="MAX_FAIL",
        help=(f"Limit consecutive write() failures to MAX_FAIL <= {FAILURE_MAX} "
              f"(default: {FAILURE_DEFAULT}; unlimited: 0)")
    )

    parser.add_argument(
        "-b", "--block-size", type=int, default=0, metavar="BLOCK_SIZE",
        help=(f"Set write() size to BLOCK_SIZE <= {BS_MAX} "
              f"(default: 0, which writes the iteration number as a line)")
    )

    parser.add_argument(
        "-l", "--lock", action="store_true",
        help="Place an exclusive lock (LOCK_EX) on FILENAME"
    )

    return parser


def parse_args(argv: Optional[List[str]] = None,
               parser: Optional[argparse.ArgumentParser] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Arguments to parse, defaults to sys.argv[1:]
        parser: Parser to use, a fresh one from get_argument_parser() if None

    Returns:
        argparse.Namespace: The parsed command-line arguments

    Command-line arguments:
        FILENAME: File to write to (exactly one expected)
        -s/--sleep: Seconds to sleep between writes
        -c/--count: Maximum number of iterations
        -f/--fail-max: Consecutive write failures before giving up (0 = never)
        -b/--block-size: Bytes per write (0 = iteration number as a line)
        -l/--lock: Hold an exclusive lock on FILENAME
    """
    if parser is None:
        parser = get_argument_parser()
    return parser.parse_args(argv)


def build_config(parser: argparse.ArgumentParser, args: argparse.Namespace) -> RunConfig:
    """Turn parsed arguments into a RunConfig, exiting on usage errors.

    Args:
        parser: Parser used to report usage errors
        args: Parsed command-line arguments

    Returns:
        Validated run configuration
    """
    if len(args.filename) != 1:
        parser.error("Expecting one, and only one, FILENAME")

    try:
        return RunConfig(
            filename=args.filename[0],
            interval=args.sleep,
            iterations=args.count,
            failmax=args.fail_max,
            block_size=args.block_size,
            exclusive_lock=args.lock
        )
    except ValueError as err:
        parser.error(str(err))


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the script.

    Parses and validates the command line, runs the writer and exits with
    its status. Usage errors exit with status 2, help with status 0.
    """
    parser = get_argument_parser()
    args = parse_args(argv, parser)
    config = build_config(parser, args)

    writer = TimedWriter(config)
    sys.exit(writer.run())


if __name__ == "__main__":
    main()
