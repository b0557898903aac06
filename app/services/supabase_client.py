# app/services/supabase_client.py

import os

from fastapi import Request
from supabase import Client, ClientOptions, create_client


def create_supabase_client() -> Client:
    """
    Build a service-role Supabase client from the environment.

    Service-role access bypasses row-level security; webhooks are not tied
    to a signed-in user so there is no user session to act under.
    """
    url = os.getenv("SUPABASE_URL")
    key = (
        os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        or os.getenv("SUPABASE_SERVICE_KEY")
        or os.getenv("SUPABASE_KEY")
    )

    if not url or not key:
        raise RuntimeError(
            "Supabase configuration missing.\n"
            "Required env vars:\n"
            "- SUPABASE_URL\n"
            "- SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_SERVICE_KEY / SUPABASE_KEY)"
        )

    return create_client(
        url,
        key,
        options=ClientOptions(auto_refresh_token=False, persist_session=False),
    )


def get_supabase(request: Request) -> Client:
    """
    Request dependency. The client is built on first use and kept on
    app.state so handlers receive it explicitly instead of importing a
    module-level global.
    """
    client = getattr(request.app.state, "supabase", None)
    if client is None:
        client = create_supabase_client()
        request.app.state.supabase = client
    return client
