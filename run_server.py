#!/usr/bin/env python
"""
API Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py
    Consumer:     python run_server.py --consumer

    Or with Gunicorn:
    gunicorn ljk_analytics.main:app -c gunicorn.conf.py
"""

import argparse
import os
import subprocess


def run_dev_server(host: str, port: int):
    """Run development server with auto-reload."""
    import uvicorn

    uvicorn.run(
        "ljk_analytics.main:app",
        host=host,
        port=port,
        reload=True,
        reload_dirs=["ljk_analytics"],
        log_level="debug",
        access_log=True,
    )


def run_prod_server(host: str, port: int):
    """Run production server with Uvicorn directly."""
    import uvicorn

    uvicorn.run(
        "ljk_analytics.main:app",
        host=host,
        port=port,
        workers=int(os.getenv("WORKERS", 4)),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        access_log=True,
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )


def run_gunicorn():
    """Run with Gunicorn (recommended for production)."""
    subprocess.run(["gunicorn", "ljk_analytics.main:app", "-c", "gunicorn.conf.py"], check=False)


def run_consumer():
    """Run the Kafka stream consumer in the foreground."""
    from ljk_analytics.ingestion.stream_consumer import main

    main()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="LJK Analytics Server")
    parser.add_argument("--dev", action="store_true", help="Run in development mode with auto-reload")
    parser.add_argument("--gunicorn", action="store_true", help="Run with Gunicorn (production)")
    parser.add_argument("--consumer", action="store_true", help="Run the stream consumer instead of the API")
    parser.add_argument("--port", type=int, default=None, help="Port to run on (default: API_PORT)")

    args = parser.parse_args()

    from ljk_analytics.config import get_settings

    settings = get_settings()
    host = settings.api_host
    port = args.port or settings.api_port
    os.environ["PORT"] = str(port)

    if args.consumer:
        run_consumer()
    elif args.dev:
        run_dev_server(host, port)
    elif args.gunicorn:
        run_gunicorn()
    else:
        run_prod_server(host, port)
