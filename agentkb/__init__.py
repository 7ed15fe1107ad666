# =============================================================================
# Agent Knowledge Base
# =============================================================================
# Per-agent retrieval-augmented knowledge service. Agents are trained on
# text, documents, audio/video, websites and YouTube videos; questions are
# answered from each agent's own chunks with hybrid (vector + keyword)
# retrieval.
#
# Package structure:
#   agentkb/
#   ├── api/          → FastAPI route handlers (train, ask, agents)
#   ├── db/           → Database engines, sessions and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Chunking, versioning, provider client, ingestion,
#   │                    retrieval, answering and source acquisition
#   └── workers/      → Celery application and the training task
# =============================================================================
