"""Authentication helpers for Gmail API."""

from __future__ import annotations

import logging

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from .constants import CONFIG_DIR, CREDENTIALS_PATH, SCOPES, TOKEN_PATH
from .display import console
from .gmail_client import get_mailbox_profile

logger = logging.getLogger(__name__)


def get_gmail_service() -> Resource:
    """Return an authenticated Gmail API service object.

    Loads the cached token from TOKEN_PATH and refreshes it when expired.
    Without a token an OAuth browser flow runs, which needs the client
    secrets at CREDENTIALS_PATH.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    creds: Credentials | None = None

    if TOKEN_PATH.exists():
        creds = Credentials.from_authorized_user_file(str(TOKEN_PATH), SCOPES)

    if creds and creds.expired and creds.refresh_token:
        logger.debug("Refreshing expired Gmail token")
        creds.refresh(Request())
    elif not creds or not creds.valid:
        if not CREDENTIALS_PATH.exists():
            raise FileNotFoundError(
                f"Credentials file not found at {CREDENTIALS_PATH}.\n"
                "Download your OAuth client credentials from the Google Cloud Console "
                "and save them as:\n"
                f"  {CREDENTIALS_PATH}"
            )
        flow = InstalledAppFlow.from_client_secrets_file(str(CREDENTIALS_PATH), SCOPES)
        creds = flow.run_local_server(port=0)

    TOKEN_PATH.write_text(creds.to_json())

    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def check_auth() -> bool:
    """Report whether the Gmail API is reachable with the stored credentials."""
    try:
        service = get_gmail_service()
        profile = get_mailbox_profile(service)
    except FileNotFoundError as exc:
        console.print(f"[red]Authentication failed:[/red] {exc}")
        return False
    except Exception as exc:  # noqa: BLE001
        console.print(f"[red]Authentication failed:[/red] {exc}")
        return False

    console.print(
        f"[green]Authenticated as {profile['emailAddress']}[/green] "
        f"({profile.get('messagesTotal', 0)} messages)"
    )
    return True
