"""Agent execution: stream parsing, process gateway and run orchestration.

The external agent is a CLI that prints one JSON object per line on stdout
(the ``stream-json`` dialect). The parser turns that stream into canonical
chunks; the orchestrator persists them to an append-only per-run log that
pollers read with ``list_chunks(run_id, after_sequence)``.
"""
