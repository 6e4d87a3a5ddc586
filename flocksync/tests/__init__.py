"""Test suite for the flocksync ChMS integration layer.

Organized into three categories:

1. core/: Unit tests for core domain logic
   - Minimal dependencies, fast execution
   - Uses in-memory fakes for ports

2. adapters/: Integration tests for adapter implementations
   - Provider adapters against httpx.MockTransport doubles
   - SQLite store, scheduler and webhook server against real resources

3. fakes/: Port implementations for testing
   - In-memory ChmsProviderPort, identity/connection store and SyncPort
   - Used by core unit tests
"""
