"""
main.py
========
Central entry point for the SCAI Guard session engine.

Run with:
    uvicorn main:app --reload
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before any module reads env vars

# Configure logging for the entire application
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# Keep webhook transport chatter out of the session logs
for _client_logger_name in ("aiohttp.client", "aiohttp.access"):
    logging.getLogger(_client_logger_name).setLevel(logging.WARNING)

from src.api.app import app  # noqa: F401, E402

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=int(os.getenv("PORT", "3000")), reload=True)
