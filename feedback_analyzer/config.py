"""
Feedback Analyzer Configuration

Settings read from environment variables, with defaults for local runs.
"""

import os

# ========== AWS BEDROCK ==========
AWS_DEFAULT_REGION = os.getenv("AWS_DEFAULT_REGION", "us-east-1")
CHAT_MODEL_ID = os.getenv("FEEDBACK_CHAT_MODEL_ID", "us.meta.llama3-3-70b-instruct-v1:0")
CHAT_TEMPERATURE = float(os.getenv("FEEDBACK_CHAT_TEMPERATURE", "0.1"))
CHAT_MAX_TOKENS = int(os.getenv("FEEDBACK_CHAT_MAX_TOKENS", "2000"))
EMBEDDING_MODEL_ID = os.getenv("FEEDBACK_EMBEDDING_MODEL_ID", "cohere.embed-english-v3")

# ========== PIPELINE ==========
TOOL_CALL_LIMIT = int(os.getenv("FEEDBACK_TOOL_CALL_LIMIT", "30"))
SUMMARY_MAX_TOKENS = int(os.getenv("FEEDBACK_SUMMARY_MAX_TOKENS", "8000"))
SUMMARY_KEEP_MESSAGES = int(os.getenv("FEEDBACK_SUMMARY_KEEP_MESSAGES", "10"))
SIMILAR_TOP_K = int(os.getenv("FEEDBACK_SIMILAR_TOP_K", "5"))
PARALLEL_WORKERS = int(os.getenv("FEEDBACK_PARALLEL_WORKERS", "3"))

# Comma-separated tool names that need human approval (e.g. "search_similar_tickets")
APPROVAL_TOOLS = [
    name.strip()
    for name in os.getenv("FEEDBACK_APPROVAL_TOOLS", "").split(",")
    if name.strip()
]

# ========== SESSIONS & CACHE ==========
SESSION_TTL_SECONDS = float(os.getenv("FEEDBACK_SESSION_TTL_SECONDS", "86400"))
CACHE_TTL_SECONDS = float(os.getenv("FEEDBACK_CACHE_TTL_SECONDS", "86400"))
BATCH_WORKERS = int(os.getenv("FEEDBACK_BATCH_WORKERS", "4"))

# ========== STORAGE ==========
# "memory" (exact cosine search) or "chroma" (HNSW)
VECTOR_STORE = os.getenv("FEEDBACK_VECTOR_STORE", "memory")
CHROMA_PATH = os.getenv("FEEDBACK_CHROMA_PATH", "data/vectordb")
CHROMA_COLLECTION = os.getenv("FEEDBACK_CHROMA_COLLECTION", "feedback_tickets")
DB_URL = os.getenv("FEEDBACK_DB_URL", "sqlite:///data/db/feedback.db")

# ========== LOGGING ==========
LOG_LEVEL = os.getenv("FEEDBACK_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("FEEDBACK_LOG_JSON", "true").lower() in ("1", "true", "yes")
