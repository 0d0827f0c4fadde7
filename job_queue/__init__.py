"""
Message Queue — Decouples webhook ingestion and outbound delivery from processing.

- The API PUBLISHES raw inbound events and ticket-status signals
- Ingestion workers CONSUME them and run the flow interpreter
- The interpreter PUBLISHES OutgoingJobs; delivery workers send them
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
