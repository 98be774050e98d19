"""
Configuration Module

Loads environment variables and provides configuration constants for the
benchmark engine. Configured for fully local operation: SQLite storage, any
OpenAI-compatible judge endpoint, and an optional OpenSearch observability
cluster for trace-mode agents.

==============================================================================
FEATURES CONFIGURED IN THIS MODULE:
==============================================================================

1. STORAGE CONFLICT RETRIES (Feature: scripted-updates)
   - STORAGE_RETRY_ON_CONFLICT: re-reads allowed after a revision mismatch

2. RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
   - RETRY_MAX_ATTEMPTS: How many times to retry before giving up
   - RETRY_BASE_DELAY: Initial delay (seconds), doubles each retry
   - RETRY_MAX_DELAY: Maximum delay cap to prevent excessive waits

3. TRACE POLLING (Feature: trace-polling)
   - TRACE_POLL_INTERVAL_SECONDS: wait between two span lookups
   - TRACE_POLL_MAX_ATTEMPTS: lookups before a report is marked as error
   - MAX_CONCURRENT_TRACE_POLLERS: bound on simultaneously polling reports

==============================================================================
"""

import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# SQLite (local database)
SQLITE_DB_PATH = os.getenv("SQLITE_DB_PATH", os.path.join(os.path.dirname(__file__), "..", "..", "data", "agent_health.db"))

# API
API_TITLE = os.getenv("API_TITLE", "Agent Health API")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "4001"))
API_DEBUG = os.getenv("API_DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:4000,http://localhost:5173").split(",")

# LLM judge (local Ollama or any OpenAI-compatible endpoint)
# Key resolution order: LLM_API_KEY → OPENAI_API_KEY → "ollama" (no-auth fallback)
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "ollama"
LLM_MODEL = os.getenv("LLM_MODEL", "qwen3-coder:latest")
JUDGE_TEMPERATURE = float(os.getenv("JUDGE_TEMPERATURE", "0.1"))
JUDGE_MAX_TOKENS = int(os.getenv("JUDGE_MAX_TOKENS", "4096"))

# Agent interface (AG-UI over Server-Sent Events)
AGENT_TIMEOUT_SECONDS = float(os.getenv("AGENT_TIMEOUT_SECONDS", "600"))
AGENT_IDLE_TIMEOUT_SECONDS = float(os.getenv("AGENT_IDLE_TIMEOUT_SECONDS", "120"))

# ==============================================================================
# SCRIPTED UPDATES (Feature: scripted-updates)
# ==============================================================================
# Benchmark documents hold every run of a benchmark and are written by the
# orchestrator, the cancel endpoint and the trace pollers at the same time.
# Each write is a revision-checked read-mutate-write; on a revision mismatch
# the write is re-attempted up to this many extra times.
# ==============================================================================
STORAGE_RETRY_ON_CONFLICT = int(os.getenv("STORAGE_RETRY_ON_CONFLICT", "3"))

# ==============================================================================
# RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
# ==============================================================================
# These settings control how the judge handles LLM rate limit (429) errors.
#
# With defaults (5 attempts, 2s base): waits 2s, 4s, 8s, 16s = 30s max
# ==============================================================================
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "2.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "60.0"))

# ==============================================================================
# OBSERVABILITY BACKEND (Feature: trace-polling)
# ==============================================================================
# OpenSearch cluster holding OTel spans. When OBSERVABILITY_ENDPOINT is empty
# span lookups return nothing and trace-mode reports end in metrics error
# once the attempt cap is reached.
# ==============================================================================
OBSERVABILITY_ENDPOINT = os.getenv("OBSERVABILITY_ENDPOINT", "")
OBSERVABILITY_USERNAME = os.getenv("OBSERVABILITY_USERNAME", "")
OBSERVABILITY_PASSWORD = os.getenv("OBSERVABILITY_PASSWORD", "")
OBSERVABILITY_TRACES_INDEX = os.getenv("OBSERVABILITY_TRACES_INDEX", "otel-v1-apm-span-*")
OBSERVABILITY_TLS_SKIP_VERIFY = os.getenv("OBSERVABILITY_TLS_SKIP_VERIFY", "false").lower() == "true"
TRACE_RUN_ID_FIELD = os.getenv("TRACE_RUN_ID_FIELD", "span.attributes.run@id")
TRACE_QUERY_SIZE = int(os.getenv("TRACE_QUERY_SIZE", "500"))

# ==============================================================================
# TRACE POLLING (Feature: trace-polling)
# ==============================================================================
# Spans typically take a few minutes to reach the observability store.
# With defaults (10s interval, 20 attempts) a report waits a bit over 3 min
# before it is marked as error.
# ==============================================================================
TRACE_POLL_INTERVAL_SECONDS = float(os.getenv("TRACE_POLL_INTERVAL_SECONDS", "10"))
TRACE_POLL_MAX_ATTEMPTS = int(os.getenv("TRACE_POLL_MAX_ATTEMPTS", "20"))
MAX_CONCURRENT_TRACE_POLLERS = int(os.getenv("MAX_CONCURRENT_TRACE_POLLERS", "5"))
