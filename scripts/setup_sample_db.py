"""Utility that launches a sample PostgreSQL Docker container for dbrelay."""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dbrelay.config import load_config
from dbrelay.crypto import CredentialCodec
from dbrelay.errors import ConfigurationError

DEFAULT_CONTAINER = "dbrelay-sample-db"
DEFAULT_PORT = 5543
DEFAULT_PASSWORD = "dbrelay"
DEFAULT_DB = "dbrelay_demo"
DEFAULT_USER = "dbrelay"
DOCKER_IMAGE = "postgres:16-alpine"


def run(cmd: list[str], *, check: bool = True, **kwargs) -> subprocess.CompletedProcess[str]:
    print("$", " ".join(cmd), file=sys.stderr)
    return subprocess.run(cmd, check=check, text=True, **kwargs)


def container_exists(name: str) -> bool:
    result = subprocess.run(
        ["docker", "ps", "-a", "--filter", f"name={name}", "--format", "{{.ID}}"],
        text=True,
        capture_output=True,
    )
    return bool(result.stdout.strip())


def start_container(name: str, port: int, password: str, database: str, user: str) -> None:
    if container_exists(name):
        print(f"Container '{name}' already exists. Reusing it.", file=sys.stderr)
        run(["docker", "start", name], check=False)
    else:
        run(
            [
                "docker",
                "run",
                "-d",
                "--name",
                name,
                "-e",
                f"POSTGRES_PASSWORD={password}",
                "-e",
                f"POSTGRES_DB={database}",
                "-e",
                f"POSTGRES_USER={user}",
                "-p",
                f"{port}:5432",
                DOCKER_IMAGE,
            ]
        )
    wait_for_start(name, user)


def wait_for_start(name: str, user: str, retries: int = 15, delay: float = 1.0) -> None:
    for _ in range(retries):
        result = subprocess.run(["docker", "exec", name, "pg_isready", "-U", user], text=True)
        if result.returncode == 0:
            return
        time.sleep(delay)
    print("Warning: database did not report ready state; continuing anyway.", file=sys.stderr)


def seed_data(name: str, database: str, user: str) -> None:
    sql = """
    CREATE SCHEMA IF NOT EXISTS billing;
    CREATE TABLE IF NOT EXISTS accounts (
        id SERIAL PRIMARY KEY,
        email TEXT NOT NULL,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        account_id INTEGER REFERENCES accounts(id),
        total NUMERIC(10,2) NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
    );
    CREATE TABLE IF NOT EXISTS billing.invoices (
        id SERIAL PRIMARY KEY,
        order_id INTEGER REFERENCES public.orders(id),
        issued_on DATE NOT NULL DEFAULT current_date
    );
    INSERT INTO accounts (email) VALUES
        ('anna@example.com'),
        ('ben@example.com'),
        ('cara@example.com')
    ON CONFLICT DO NOTHING;
    INSERT INTO orders (account_id, total, status)
    SELECT id, (random()*100)::numeric(10,2), 'complete'
    FROM accounts
    ON CONFLICT DO NOTHING;
    ANALYZE;
    """.strip()

    run(
        ["docker", "exec", "-i", name, "psql", "-U", user, "-d", database, "-v", "ON_ERROR_STOP=1"],
        input=sql,
    )


def connection_payload(port: int, user: str, database: str, password: str) -> dict[str, object]:
    """Build a request body whose password is encrypted under the configured master key."""

    config = load_config()
    codec = CredentialCodec(config.require_master_key())
    return {
        "provider": "postgresql",
        "host": "localhost",
        "port": port,
        "database": database,
        "username": user,
        "password": codec.encrypt(password),
        "sslEnabled": False,
    }


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--container", default=DEFAULT_CONTAINER, help="Docker container name")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Host port to expose Postgres on")
    parser.add_argument("--password", default=DEFAULT_PASSWORD, help="Postgres password")
    parser.add_argument("--database", default=DEFAULT_DB, help="Database name to create")
    parser.add_argument("--user", default=DEFAULT_USER, help="Database user")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    try:
        payload = connection_payload(args.port, args.user, args.database, args.password)
    except ConfigurationError as exc:
        print(f"{exc.message}; export it before running this script.", file=sys.stderr)
        return 1
    try:
        start_container(args.container, args.port, args.password, args.database, args.user)
        seed_data(args.container, args.database, args.user)
    except FileNotFoundError:
        print("Docker is not installed or not on PATH.", file=sys.stderr)
        return 1
    print(
        "Sample database is ready. POST this body to /api/database/tables:",
        file=sys.stderr,
    )
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
