from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    The portal is a server-rendered Laravel app; selectors may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Anti-bot interstitial
    challenge_phrases: tuple[str, ...] = (
        "just a moment",
        "performing security verification",
        "checking your browser",
        "verify you are human",
    )
    challenge_iframe: str = (
        'iframe[src*="challenges.cloudflare.com"], iframe[src*="cloudflare.com/cdn-cgi/challenge-platform"]'
    )

    # Authenticated shell
    shell_marker: str = ".user-panel"
    shell_content_markers: tuple[str, ...] = ("#spa-content", ".content-wrapper")
    authenticated_path: str = "/portal"

    # Login
    email_input: str = 'input[type="email"], input[name="email"]'
    password_input: str = 'input[type="password"], input[name="password"]'
    submit_button: str = 'button[type="submit"], input[type="submit"]'
    login_error: str = ".alert-danger, .error-message, .invalid-feedback"

    # Anti-forgery token
    csrf_meta: str = 'meta[name="csrf-token"]'

    # SMS received page date filter
    date_from_input: str = 'input[name="start"], input#start_date'
    date_to_input: str = 'input[name="end"], input#end_date'

    # Fragments returned by the SMS endpoints
    range_card: str = ".card.card-body.mb-1.pointer"
    number_card: str = ".card.card-body.border-bottom.bg-100.p-2.rounded-0"
    table_rows: str = "table tbody tr"
    message_text: tuple[str, ...] = (
        ".col-9.col-sm-6.text-center.text-sm-start p",
        ".sms-message",
        "table tbody tr td:nth-child(3)",
        ".message-content",
    )
