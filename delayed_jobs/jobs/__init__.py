"""
Delayed job engine.

This package provides a durable job queue with:
- Polymorphic owners so jobs can be found, rescheduled or cancelled later
- Atomic claims shared by any number of workers
- Retry with exponential backoff and permanent failure marking
- A reaper that recovers jobs from crashed workers
"""
