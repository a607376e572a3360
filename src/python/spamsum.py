#!/usr/bin/env python3
"""
Context-Triggered Piecewise Hashing (spamsum / ssdeep)

A fuzzy hash that stays similar for inputs that are mostly similar:
block boundaries are chosen by the content itself (a rolling hash over
the last 7 bytes), so a local edit only disturbs the digest symbols of
the blocks it touches.

Components:
  - RollingHash:  boundary detector over a 7-byte sliding window
  - SumHash:      FNV-style accumulator over the bytes of one block
  - build_digest: one pass over the input, one base64 symbol per block
  - compute:      adaptive block-size search, yields a Signature triple
  - cost_matrix / edit_distance: weighted Damerau-Levenshtein distance
    (adjacent transpositions only) used to compare digests

Signature format:  <block_size>:<normal_digest>:<shorter_digest>

Usage:
  python spamsum.py hash     <file>... [--block-size N] [--legacy]
  python spamsum.py distance <a> <b>
  python spamsum.py matrix   <a> <b>
"""

import argparse
import mmap
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List


MASK32 = 0xFFFFFFFF


# ============================================================================
# Rolling Hash (boundary trigger)
#
# Three 32-bit accumulators updated per byte:
#   h1 = sum of the bytes in the window
#   h2 = weighted sum, newest byte weighted ROLLING_WINDOW, oldest 1
#   h3 = shift-xor history; 5 bits per byte, so only the last 7 bytes
#        survive in 32 bits
# All arithmetic wraps modulo 2^32.  The value depends on the last
# ROLLING_WINDOW bytes only, so trigger positions resynchronize within
# a window after an insertion or deletion.
# ============================================================================

ROLLING_WINDOW = 7


class RollingHash:
    """Rolling hash over the last ROLLING_WINDOW bytes."""
    __slots__ = ('h1', 'h2', 'h3', 'window', 'n')

    def __init__(self):
        self.h1 = 0
        self.h2 = 0
        self.h3 = 0
        self.window = [0] * ROLLING_WINDOW
        self.n = 0

    def update(self, c: int) -> None:
        """Slide the window forward by one byte."""
        slot = self.n % ROLLING_WINDOW

        self.h2 = (self.h2 - self.h1 + ROLLING_WINDOW * c) & MASK32
        self.h1 = (self.h1 + c - self.window[slot]) & MASK32

        self.window[slot] = c
        self.n += 1

        self.h3 = ((self.h3 << 5) & MASK32) ^ c

    def value(self) -> int:
        return (self.h1 + self.h2 + self.h3) & MASK32


# ============================================================================
# Sum Hash (per-block accumulator)
#
# FNV-1 style: multiply by the 32-bit FNV prime, then xor the byte.
# Only value % 64 is ever used, as the index of one base64 symbol.
# ============================================================================

SUM_HASH_SEED = 0x28021967
SUM_HASH_PRIME = 0x01000193


class SumHash:
    """Multiplicative hash over the bytes since the last trigger."""
    __slots__ = ('h',)

    def __init__(self):
        self.h = SUM_HASH_SEED

    def update(self, c: int) -> None:
        self.h = ((self.h * SUM_HASH_PRIME) & MASK32) ^ c

    def value(self) -> int:
        return self.h

    def reset(self) -> None:
        """Start a new block."""
        self.h = SUM_HASH_SEED


# ============================================================================
# Byte sources
#
# The digest builder re-reads its input from the start on every pass.
# Buffers (bytes, bytearray, mmap) restart by iterating a fresh
# memoryview; binary file objects restart with seek(0).
# ============================================================================

READ_CHUNK = 1 << 20  # 1 MB


BUFFER_TYPES = (bytes, bytearray, memoryview, mmap.mmap)


def _is_file(source) -> bool:
    # mmap also has read/seek, but is iterated as a buffer
    return not isinstance(source, BUFFER_TYPES) and hasattr(source, 'read')


def _iter_bytes(source):
    """Yield the byte values of source from offset 0."""
    if _is_file(source):
        source.seek(0)
        while True:
            chunk = source.read(READ_CHUNK)
            if not chunk:
                break
            yield from chunk
    else:
        # Released on exhaustion, so an mmap can be closed afterwards.
        with memoryview(source) as view:
            yield from view


def source_length(source) -> int:
    """Total length in bytes of a buffer or seekable binary file."""
    if _is_file(source):
        source.seek(0, os.SEEK_END)
        size = source.tell()
        source.seek(0)
        return size
    with memoryview(source) as view:
        return view.nbytes


# ============================================================================
# Digest construction (one pass at one block size)
# ============================================================================

MIN_BLOCK_SIZE = 3
MAX_DIGEST_LEN = 64
HALF_MAX_DIGEST_LEN = MAX_DIGEST_LEN // 2
B64 = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/'


def build_digest(source, block_size: int,
                 digest_len: int = MAX_DIGEST_LEN,
                 legacy_mode: bool = False) -> str:
    """Hash source at a fixed block size into a string of base64 symbols.

    A block ends after byte c when rolling_hash % block_size equals
    block_size - 1.  At most digest_len - 1 blocks are closed this way;
    the remainder of the input always goes into the final symbol, so the
    result is never longer than digest_len.

    The final symbol is dropped only when the rolling hash is 0, legacy
    mode is off, and the accumulator still holds its seed.  For empty
    input this gives '' (or one symbol in legacy mode).
    """
    if block_size < 1:
        raise ValueError(f"block size must be >= 1, got {block_size}")
    if digest_len < 1:
        raise ValueError(f"digest length must be >= 1, got {digest_len}")

    out: List[str] = []
    trigger = block_size - 1
    cap = digest_len - 1
    sh = SumHash()
    rh = RollingHash()

    for c in _iter_bytes(source):
        sh.update(c)
        rh.update(c)

        if rh.value() % block_size != trigger or len(out) >= cap:
            continue

        out.append(B64[sh.value() % 64])
        sh.reset()

    if rh.value() != 0 or legacy_mode or sh.value() != SUM_HASH_SEED:
        out.append(B64[sh.value() % 64])
    return ''.join(out)


# ============================================================================
# Block size selection
#
# Start from the smallest MIN_BLOCK_SIZE * 2^k with
# block_size * MAX_DIGEST_LEN >= total bytes, then halve while the normal
# digest comes out shorter than HALF_MAX_DIGEST_LEN.  Each attempt makes
# two full passes: block_size (64 symbols) and 2 * block_size (32).
# ============================================================================

SIGNATURE_FORMAT = '{block_size}:{normal}:{shorter}'


@dataclass(frozen=True)
class Signature:
    """A fuzzy hash: block size plus digests at block_size and 2*block_size."""
    block_size: int
    normal: str
    shorter: str

    def __str__(self):
        return SIGNATURE_FORMAT.format(block_size=self.block_size,
                                       normal=self.normal,
                                       shorter=self.shorter)


@dataclass
class HashOptions:
    """Options for signature computation."""
    block_size: int = 0        # 0 selects the size heuristic
    legacy_mode: bool = False
    verbose: bool = False


def guess_block_size(total_bytes: int) -> int:
    """Initial block size aiming at a MAX_DIGEST_LEN-symbol digest."""
    block_size = MIN_BLOCK_SIZE
    while block_size * MAX_DIGEST_LEN < total_bytes:
        block_size *= 2
    return block_size


def compute(source, block_size: int = 0,
            legacy_mode: bool = False,
            verbose: bool = False,
            opts: 'HashOptions' = None) -> Signature:
    """Compute the Signature of a buffer or seekable binary file.

    block_size of 0 (or None) derives the starting size from the input
    length and is always MIN_BLOCK_SIZE * 2^k.  A supplied block size is
    used as given (it need not be of that form) but must be at least
    MIN_BLOCK_SIZE; it is halved, never below MIN_BLOCK_SIZE, while the
    digest is too short.
    """
    if opts is not None:
        block_size, legacy_mode, verbose = (opts.block_size, opts.legacy_mode,
                                            opts.verbose)

    if not block_size:
        total = source_length(source)
        block_size = guess_block_size(total)
        if verbose:
            print(f"spamsum: {total:,} bytes, initial block size {block_size}",
                  file=sys.stderr)
    elif block_size < MIN_BLOCK_SIZE:
        raise ValueError(f"block size must be >= {MIN_BLOCK_SIZE}, "
                         f"got {block_size}")

    while True:
        normal = build_digest(source, block_size, MAX_DIGEST_LEN, legacy_mode)
        shorter = build_digest(source, block_size * 2, HALF_MAX_DIGEST_LEN,
                               legacy_mode)

        if verbose:
            print(f"spamsum: block size {block_size}: "
                  f"normal {len(normal)}, shorter {len(shorter)} symbols",
                  file=sys.stderr)

        if len(normal) < HALF_MAX_DIGEST_LEN and block_size > MIN_BLOCK_SIZE:
            block_size = max(MIN_BLOCK_SIZE, block_size // 2)
            continue

        return Signature(block_size=block_size, normal=normal, shorter=shorter)


# ============================================================================
# Edit distance (comparison)
#
# Weighted Damerau-Levenshtein restricted to adjacent transpositions:
#
#   M[i][0] = i * delete,  M[0][j] = j * insert
#   M[i][j] = M[i-1][j-1]                                 if a[i-1] == b[j-1]
#           = min(M[i-1][j] + delete,
#                 M[i][j-1] + insert,
#                 M[i-1][j-1] + change)                   otherwise
#   M[i][j] = min(M[i][j], M[i-2][j-2] + swap)
#             if a[i-2] == b[j-1] and a[i-1] == b[j-2]
#
# Example, a = 'xyz', b = 'ayzb':
#
#   /   a y z b
#     0 1 2 3 4
#   x 1 2 3 4 5
#   y 2 3 2 3 4
#   z 3 4 3 2 3
# ============================================================================

@dataclass(frozen=True)
class CostProfile:
    """Costs of the edit operations."""
    insert: int = 1
    delete: int = 1
    change: int = 2
    swap: int = 2

    def __post_init__(self):
        for name in ('insert', 'delete', 'change', 'swap'):
            cost = getattr(self, name)
            if (not isinstance(cost, int) or isinstance(cost, bool)
                    or cost < 0):
                raise ValueError(f"{name} cost must be a non-negative "
                                 f"integer, got {cost!r}")


DEFAULT_COSTS = CostProfile()


def _check_strings(a, b) -> None:
    if not (isinstance(a, str) and isinstance(b, str)):
        raise TypeError("inputs must be strings")


def cost_matrix(a: str, b: str,
                costs: CostProfile = DEFAULT_COSTS) -> List[List[int]]:
    """Return the (len(a)+1) x (len(b)+1) edit cost matrix."""
    _check_strings(a, b)
    height = len(a) + 1
    width = len(b) + 1

    m = [[0] * width for _ in range(height)]
    for col in range(width):
        m[0][col] = col * costs.insert
    for row in range(1, height):
        m[row][0] = row * costs.delete

    for row in range(1, height):
        north_row = m[row - 1]
        cur_row = m[row]
        for col in range(1, width):
            if a[row - 1] == b[col - 1]:
                cost = north_row[col - 1]
            else:
                cost = min(north_row[col] + costs.delete,
                           cur_row[col - 1] + costs.insert,
                           north_row[col - 1] + costs.change)

            if (row > 1 and col > 1
                    and a[row - 2] == b[col - 1] and a[row - 1] == b[col - 2]):
                cost = min(cost, m[row - 2][col - 2] + costs.swap)

            cur_row[col] = cost

    return m


def edit_distance(a: str, b: str, costs: CostProfile = DEFAULT_COSTS) -> int:
    """Weighted edit distance between two strings (e.g. two digests)."""
    return cost_matrix(a, b, costs)[-1][-1]


def format_cost_matrix(a: str, b: str,
                       costs: CostProfile = DEFAULT_COSTS) -> str:
    """Render the cost matrix with a as row labels and b as column labels."""
    m = cost_matrix(a, b, costs)
    lines = ['/   ' + ' '.join(b)]
    for row, label in enumerate(' ' + a):
        lines.append(f"{label} " + ' '.join(str(v) for v in m[row]))
    return '\n'.join(lines)


# ============================================================================
# File I/O
# ============================================================================

@contextmanager
def mmap_open(path):
    """Map a file read-only for hashing.

    mmap cannot map zero bytes, so an empty file yields b''.
    """
    with open(path, 'rb') as f:
        if os.fstat(f.fileno()).st_size == 0:
            yield b""
            return
        with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as mm:
            yield mm


def hash_file(path, block_size: int = 0,
              legacy_mode: bool = False,
              verbose: bool = False,
              opts: 'HashOptions' = None) -> Signature:
    """Compute the Signature of the file at path."""
    with mmap_open(path) as data:
        return compute(data, block_size=block_size, legacy_mode=legacy_mode,
                       verbose=verbose, opts=opts)


# ============================================================================
# CLI
# ============================================================================

def _block_size_arg(s: str) -> int:
    """Parse --block-size; 0 means automatic."""
    try:
        n = int(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid block size: {s!r}")
    if n != 0 and n < MIN_BLOCK_SIZE:
        raise argparse.ArgumentTypeError(
            f"block size must be 0 or >= {MIN_BLOCK_SIZE}")
    return n


def _costs_from_args(args) -> CostProfile:
    try:
        return CostProfile(insert=args.insert, delete=args.delete,
                           change=args.change, swap=args.swap)
    except ValueError as e:
        raise SystemExit(f"error: {e}")


def cmd_hash(args):
    opts = HashOptions(block_size=args.block_size, legacy_mode=args.legacy,
                       verbose=args.verbose)
    for path in args.files:
        try:
            sig = hash_file(path, opts=opts)
        except OSError as e:
            raise SystemExit(f"error: {path}: {e.strerror or e}")
        print(f"{sig}  {path}")


def cmd_distance(args):
    print(edit_distance(args.a, args.b, _costs_from_args(args)))


def cmd_matrix(args):
    print(format_cost_matrix(args.a, args.b, _costs_from_args(args)))


def _add_cost_args(p):
    p.add_argument('a', help='First string (e.g. a digest)')
    p.add_argument('b', help='Second string')
    p.add_argument('--insert', type=int, default=DEFAULT_COSTS.insert)
    p.add_argument('--delete', type=int, default=DEFAULT_COSTS.delete)
    p.add_argument('--change', type=int, default=DEFAULT_COSTS.change)
    p.add_argument('--swap', type=int, default=DEFAULT_COSTS.swap)


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Context-triggered piecewise hashing (spamsum)')
    sub = ap.add_subparsers(dest='command')

    # hash
    hsh = sub.add_parser('hash', help='Compute fuzzy hash signatures')
    hsh.add_argument('files', nargs='+', help='Files to hash')
    hsh.add_argument('--block-size', type=_block_size_arg, default=0,
                     metavar='N',
                     help='Initial block size (default: derived from size)')
    hsh.add_argument('--legacy', action='store_true',
                     help='Always emit the trailing block symbol')
    hsh.add_argument('--verbose', action='store_true',
                     help='Print diagnostic messages to stderr')
    hsh.set_defaults(func=cmd_hash)

    # distance
    dist = sub.add_parser('distance', help='Edit distance between two strings')
    _add_cost_args(dist)
    dist.set_defaults(func=cmd_distance)

    # matrix
    mat = sub.add_parser('matrix', help='Print the edit cost matrix')
    _add_cost_args(mat)
    mat.set_defaults(func=cmd_matrix)

    args = ap.parse_args(argv)
    if args.command is None:
        ap.print_help()
        sys.exit(1)
    args.func(args)


# ============================================================================

if __name__ == '__main__':
    main()
