# src/api/__init__.py
# =====================
# API Layer — SCAI Guard
#
# Responsibility:
#   - Expose session start / chunk upload / stop / lookup over HTTP
#   - Accept raw telephony signals from the device bridge
#   - Map the error taxonomy onto HTTP status codes
#
# Public API:
#   - create_app() — build a FastAPI app around a SessionService
#   - app          — default application used by main.py
