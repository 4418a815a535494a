# ipsec_manager/control_plane/main.py
"""
IPsec Control Plane
Serves policies to agents and stores them in a SQL database
"""

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from .. import __version__
from .api.v1.endpoints import router as api_router
from .config import settings
from .database.session import init_db

logger = logging.getLogger('control-plane')


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database initialized")
    yield


app = FastAPI(title="IPsec Control Plane", version=__version__, lifespan=lifespan)
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "control-plane", "version": __version__}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='IPsec Control Plane')
    parser.add_argument('--host', default=settings.HOST, help='Listen address')
    parser.add_argument('--port', type=int, default=settings.PORT, help='Listen port')
    parser.add_argument('--log-level', default=settings.LOG_LEVEL, help='Log level')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    logger.info(f"Starting control plane on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
