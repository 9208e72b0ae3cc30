"""
Server Manager - lifecycle orchestrator for game server instances

Responsibilities:
- Server registry (create, start, stop, restart, delete, reconfigure)
- Queue container start jobs and retry them with backoff
- Detect when a started container is accepting connections
- Reconcile persisted status with the container runtime at startup
- Notify waiting clients when their server is ready
"""
