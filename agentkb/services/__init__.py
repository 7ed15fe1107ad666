# =============================================================================
# Services Package — Business Logic
# =============================================================================
#   - chunker.py: paragraph/sentence chunking with character overlap
#   - versioning.py: content fingerprints and per-agent version numbers
#   - provider.py: credential pool, error classification, embed/generate
#   - knowledge_store.py: pluggable chunk store (pgvector, Chroma)
#   - jobs.py: training job repository and progress accounting
#   - sources.py: request validation and text acquisition per source
#   - parser.py / scraper.py / transcriber.py: acquisition collaborators
#   - ingestion.py: the training job engine
#   - retrieval.py: hybrid retrieval and context assembly
#   - answering.py: prompt building and the /ask response
#   - profiles.py: agent persona storage
# =============================================================================
