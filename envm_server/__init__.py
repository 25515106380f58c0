"""
Environment manager HTTP server.

FastAPI app exposing sync, webhooks, container desired-state mutation,
volume backups and git history. Run with `envm-server` or
`uvicorn envm_server.app:app`.
"""
