"""
Fibonacci Computation

Fast-doubling Fibonacci on Python's arbitrary-precision integers. The endpoint
exists to generate CPU and allocation load, so the recursion works on
ever-growing big integers:

    F(2k)   = F(k) * (2*F(k+1) - F(k))
    F(2k+1) = F(k)^2 + F(k+1)^2
"""

from typing import Tuple

MAX_N = 2**64 - 1


def fibonacci_pair(n: int) -> Tuple[int, int]:
    """Return (F(n), F(n+1))."""
    if n == 0:
        return 0, 1

    a, b = fibonacci_pair(n // 2)
    c = a * (2 * b - a)
    d = a * a + b * b

    if n % 2 == 0:
        return c, d
    return d, c + d


def fibonacci(n: int) -> int:
    """
    Compute the n-th Fibonacci number.

    Args:
        n: Index into the sequence, 0 <= n <= 2**64 - 1

    Returns:
        F(n) as an int

    Raises:
        ValueError: If n is outside the unsigned 64-bit range
    """
    if n < 0 or n > MAX_N:
        raise ValueError(f"n must be between 0 and {MAX_N}")
    return fibonacci_pair(n)[0]


def parse_index(value: str) -> int:
    """
    Parse the `n` query parameter as an unsigned 64-bit integer.

    Raises:
        ValueError: With a message naming the offending input
    """
    if not value.isdigit() or not value.isascii():
        raise ValueError(f'invalid syntax: "{value}" is not an unsigned integer')

    n = int(value)
    if n > MAX_N:
        raise ValueError(f'value out of range: "{value}" exceeds {MAX_N}')
    return n
