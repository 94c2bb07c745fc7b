"""Queue-driven batch orchestration engine.

A run drains an ordered list of phases. Each phase owns one queue and one task
executor; items are claimed atomically, executed, and acknowledged back to the
queue service, which decides between retry and terminal failure. Failures are
classified into structured error records, counted against a per-target circuit
breaker, and written to a dead-letter queue. The phase about to run is persisted,
so an interrupted execution resumes at the same phase boundary.

Why not Celery / Airflow?
~~~~~~~~~~~~~~~~~~~~~~~~~
The engine targets single-host, SQLite-backed batch runs driven from a CLI or a
scheduler. Resume cursors, the dead-letter record format and the retry contract
with the queue are the point of the package; a broker or a DAG scheduler would add
an operational dependency while still requiring all of that as custom logic.
"""
