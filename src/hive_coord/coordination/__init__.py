"""Coordination substrate for cooperating worker processes.

Why one JSON document instead of a database or a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
There is exactly one coordinating process and one authoritative copy of
state. What the workers need from it is small and specific:

- A versioned snapshot they can read without waiting on writers.
- Tag routing of a shared backlog with dependency gating and a stable
  priority/FIFO order.
- Exclusive claims that re-validate ownership at flush time.
- Heartbeat-driven restart of wedged workers with bounded retries.

All writes funnel through ``StateStore.commit`` into one pending queue. A
periodic flush applies the queue in submission order, bumps the version
once, and persists with write-temp-then-rename plus a one-generation
backup. The SQLite adapter is a drop-in alternative behind the same
``StorageAdapter`` protocol, not a second store.
"""
