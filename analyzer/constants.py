from __future__ import annotations

SALESFORCE_API_VERSION = "v58.0"
SESSION_PROBE_API_VERSION = "v60.0"
SESSION_LIFETIME_SECONDS = 2 * 60 * 60

# Salesforce caps the number of literals usable in a single IN (...) clause.
QUERY_CHUNK_SIZE = 450
QUERY_PAGE_SIZE = 200
MAX_PAGES_PER_CHUNK = 100
INTER_CHUNK_DELAY_SECONDS = 1.0

DEFAULT_LM_STUDIO_URL = "http://127.0.0.1:1234/v1/chat/completions"
DEFAULT_LOCAL_MODEL = "local-model"
DEFAULT_COPILOT_DEPLOYMENT = "gpt-5-chat"
DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"
COPILOT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that analyzes and summarizes multiple text "
    "responses to identify patterns, themes, and insights."
)

LOCAL_TIMEOUT_SECONDS = 30.0
HOSTED_TIMEOUT_SECONDS = 120.0
SUMMARY_LOCAL_TIMEOUT_SECONDS = 60.0
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_OUTPUT_TOKENS = 500
SUMMARY_MAX_OUTPUT_TOKENS = 2000

ANALYSIS_SEPARATOR = "\n\nText to analyze: "
SUMMARY_SEPARATOR = "\n\n"
ERROR_PREFIX = "Error: "

RECORD_ID_COLUMN = "Record ID"
ORIGINAL_TEXT_COLUMN = "Original Text"
RESPONSE_COLUMN = "Response"
RESUME_FALLBACK_COLUMN = "Filter Value"
SUMMARY_RESPONSE_COLUMNS = ("Response", "LM Studio Response", "response")

RETRIABLE_HTTP_STATUS_CODES = {408, 409, 425, 429}
