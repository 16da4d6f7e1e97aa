"""
Load worker for a reverse video-frame search index.

Modules:
- config: environment-driven configuration and logging setup.
- jobs: job messages from the dispatcher and their outcomes.
- media_api: hash artifact download and load notification.
- hash_parser: LIRE/Solr hash XML into frame records.
- dedup: sliding-window near-duplicate frame filter.
- embedding: hex histogram hashes into unit vectors and store records.
- store: vector store adapters (Milvus, FAISS).
- indexer: paced batch insert, flush and index build.
- pipeline: one job end to end with whole-job retry.
- isolation: per-job child processes.
- channel: WebSocket job channel client.
- maintenance: daily collection flush.
- cli: command-line interface entrypoint.
"""
