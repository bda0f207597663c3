"""
etl_batch -- Chunk-oriented batch ETL execution.

Reads records from a source, transforms them one at a time, and writes
them to a sink in fixed-size chunks.  Each chunk is committed together
with its step counters in one transaction, so a failed run restarts
from the last committed chunk.

Architecture:
    etl_batch/ sits on etl_kernel/.  Nothing in etl_kernel/ imports from
    etl_batch.  etl_config/ parses YAML; etl_batch.jobs turns the parsed
    config into a runnable Job.

Invariants:
    - A chunk's records and its counters commit or roll back together
    - Run ids are strictly increasing per JobInstance
    - A COMPLETED JobInstance is never executed again
    - Restart resumes after the last committed chunk
    - Status transitions are monotonic
    - Clock injection (no datetime.now() calls in services)
"""
