"""
Job Queue — Decouples the reconciliation tick from balance computation.

- The reconciler PUBLISHES one balance-check job per tick
- An external balance worker CONSUMES jobs and writes permission records
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
