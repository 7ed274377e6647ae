"""
Interactive setup wizard for Clio credentials.

Prompts for a principal's client id, client secret and refresh token, and
saves them to the secrets file (~/.datahub/secrets.json unless SECRETS_FILE
is set) with owner-only permissions (0700 dir / 0600 file).

Usage:
    python -m datahub setup
    python -m datahub.scripts.setup   (direct invocation)

Re-run whenever Clio revokes the refresh token. Rotated refresh tokens are
written back to the same file automatically.
"""
import getpass
import sys
from pathlib import Path

from datahub.clio.secrets import SECRETS_FILE_DEFAULT, FileSecretStore
from datahub.config import get_settings


def run_setup() -> None:
    settings = get_settings()
    path = Path(settings.secrets_file).expanduser() if settings.secrets_file else SECRETS_FILE_DEFAULT
    store = FileSecretStore(path)

    print("\nData Hub: Clio credential setup\n")
    print(f"Credentials will be stored in: {store.path}\n")

    principal = input(
        f"Principal (initials, or '{settings.clio_service_principal}' for the service account): "
    ).strip().lower() or settings.clio_service_principal

    if store.has_principal(principal):
        print(f"Credentials for '{principal}' already exist.")
        overwrite = input("Overwrite them? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing credentials unchanged.")
            sys.exit(0)

    client_id = input("Clio client id: ").strip()
    client_secret = getpass.getpass("Clio client secret: ").strip()
    refresh_token = getpass.getpass("Clio refresh token: ").strip()
    if not (client_id and client_secret and refresh_token):
        print("Error: client id, client secret and refresh token are all required.")
        sys.exit(1)

    store.store_principal(principal, client_id, client_secret, refresh_token)

    print(f"\nSaved credentials for '{principal}' to {store.path}")
    print(f"   Permissions: file={oct(store.path.stat().st_mode)[-3:]}")
    print("Verify them with:  GET /data-operations/check-token\n")


if __name__ == "__main__":
    run_setup()
