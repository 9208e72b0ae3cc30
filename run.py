#!/usr/bin/env python3
"""
Entry point for the Server Manager.

Usage:
    python run.py                    # Run API, WebSocket and queue workers (default)
    python run.py server             # Same, explicitly
    python run.py reconcile          # Correct persisted status against Docker and exit

Environment Variables:
    FLASK_ENV: development or production (default: development)
    PORT: Port to run on (default: 4011)
    LOG_LEVEL: Logging level (default: INFO)
    REDIS_URL, DATABASE_URL, DOCKER_API_URL: Backend locations
"""
import logging
import os
import sys


def configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s'
    )


def run_server():
    """Run the HTTP/WebSocket service with its queue workers in-process."""
    from server_manager.app import create_app

    app = create_app()
    configure_logging(app.config['LOG_LEVEL'])

    with app.app_context():
        app.registry.reconcile()
    app.job_queue.recover_stalled()
    app.job_queue.start(app.lifecycle)

    port = int(os.getenv('PORT', 4011))
    logging.getLogger(__name__).info(f"Starting Server Manager on port {port}...")
    try:
        # The reloader would start a second set of workers
        app.run(host='0.0.0.0', port=port, debug=app.config.get('DEBUG', False), use_reloader=False)
    finally:
        app.job_queue.stop(timeout=5)


def run_reconcile():
    """One-off reconciliation of persisted status with the container runtime."""
    from server_manager.app import create_app

    app = create_app()
    configure_logging(app.config['LOG_LEVEL'])

    with app.app_context():
        corrected = app.registry.reconcile()
    print(f"Corrected {len(corrected)} server(s): {', '.join(corrected) or '-'}")


if __name__ == '__main__':
    mode = sys.argv[1] if len(sys.argv) > 1 else 'server'

    if mode == 'server':
        run_server()
    elif mode == 'reconcile':
        run_reconcile()
    else:
        print(f"Unknown mode: {mode}")
        print("Usage: python run.py [server|reconcile]")
        sys.exit(1)
