"""
Concurrent safety tests for port allocation.

This package contains tests that verify the registry stays correct when
many callers allocate at once. Tests cover:
1. Lock contention and acquisition across threads and processes
2. Unique ports across concurrent threads
3. Unique ports across concurrent processes
4. Recovery from a holder process that was killed

Test markers:
- concurrent: All concurrent safety tests
"""
