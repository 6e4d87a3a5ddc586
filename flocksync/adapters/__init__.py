"""External adapters for the flocksync ChMS integration layer.

This package contains all external dependencies (httpx, aiosqlite, HTTP
servers) and provides implementations of the core port interfaces.

Adapter Organization:

- chms/: Provider adapters (Rock RMS, Planning Center, CCB) and the factory
- store/: Identity and connection persistence (SQLite)
- scheduler/: Adapters for driving scheduled pulls (daemon)
- webhook/: HTTP receiver for manual and webhook-triggered pulls
"""
