#!/usr/bin/env python3
"""
Launcher for the BookSwap API.

Usage:
    python run_server.py

Or with custom host/port:
    python run_server.py --host 127.0.0.1 --port 8000  # localhost only
    python run_server.py --host 0.0.0.0 --port 8000    # accessible from network (default)
    python run_server.py --no-reload                   # disable auto-reload
"""
import logging
import sys

import uvicorn

from bookswap.settings import settings

if __name__ == "__main__":
    host = "0.0.0.0"
    port = 8000
    reload = "--no-reload" not in sys.argv

    if "--host" in sys.argv:
        idx = sys.argv.index("--host")
        if idx + 1 < len(sys.argv):
            host = sys.argv[idx + 1]

    if "--port" in sys.argv:
        idx = sys.argv.index("--port")
        if idx + 1 < len(sys.argv):
            port = int(sys.argv[idx + 1])

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print(f"Starting uvicorn on http://{host}:{port} (reload={reload}, db={settings.db_path})")
    print("Press CTRL+C to stop")

    uvicorn.run(
        "bookswap.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["bookswap"] if reload else None,
        log_level=settings.log_level.lower(),
    )
