"""
Exact byte-pattern search.

Knuth-Morris-Pratt search over byte buffers: the pattern's failure table is
computed once and the haystack is scanned in a single linear pass, so the
worst case is O(n + m) no matter how repetitive the input is.

See: https://en.wikipedia.org/wiki/Knuth%E2%80%93Morris%E2%80%93Pratt_algorithm
"""


def compute_failure_table(pattern: bytes) -> list[int]:
    """Compute the KMP failure table for a pattern.

    table[i] is the length of the longest proper prefix of pattern[:i] that
    is also a suffix of it, with table[0] == -1 as the "restart" marker.
    """
    table = [0] * len(pattern)
    if len(pattern) >= 1:
        table[0] = -1
    if len(pattern) >= 2:
        table[1] = 0

    pos = 2
    cnd = 0
    while pos < len(pattern):
        if pattern[pos - 1] == pattern[cnd]:
            cnd += 1
            table[pos] = cnd
            pos += 1
        elif cnd > 0:
            cnd = table[cnd]
        else:
            table[pos] = 0
            pos += 1
    return table


def find_bytes(
    pattern: bytes,
    haystack: bytes | bytearray | memoryview,
    table: list[int] | None = None,
) -> int:
    """Find the first occurrence of pattern in haystack.

    Args:
        pattern: Bytes to look for (must not be empty)
        haystack: Buffer to search
        table: Precomputed failure table for pattern, if available

    Returns:
        Index of the first match, or -1 if the pattern does not occur
    """
    if not pattern:
        raise ValueError("Search pattern must not be empty")
    if table is None:
        table = compute_failure_table(pattern)

    m = 0  # start of the current candidate match in haystack
    i = 0  # position within pattern
    while m + i < len(haystack):
        if pattern[i] == haystack[m + i]:
            if i == len(pattern) - 1:
                return m
            i += 1
        elif table[i] > -1:
            m = m + i - table[i]
            i = table[i]
        else:
            m += 1
            i = 0
    return -1
