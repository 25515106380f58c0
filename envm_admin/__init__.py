"""Admin CLI for the environment manager (envm-admin)."""
