"""Fake implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeChmsProvider: Configurable people/families and recorded calls
- FakeChmsStore: In-memory identity and connection store
- FakeSyncPort: Captured sync requests with canned results
"""

from .chms import FULL_CAPABILITIES, FakeChmsProvider
from .store import FakeChmsStore
from .sync import FakeSyncPort, make_result

__all__ = [
    "FULL_CAPABILITIES",
    "FakeChmsProvider",
    "FakeChmsStore",
    "FakeSyncPort",
    "make_result",
]
