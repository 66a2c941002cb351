"""Centralized transactional email delivery with retry logic."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Optional

from flask import current_app, render_template
from flask_mail import Mail, Message

mail = Mail()
logger = logging.getLogger(__name__)


@dataclass
class EmailPayload:
    to_email: str
    subject: str
    template_name: str
    context: dict


def init_mail(app):
    mail.init_app(app)


def is_valid_recipient(email: str) -> bool:
    _, parsed = parseaddr(email or "")
    return bool(parsed and "@" in parsed)


def send_templated_email(payload: EmailPayload, *, retries: int = 3, backoff_s: float = 1.5) -> bool:
    if not is_valid_recipient(payload.to_email):
        logger.warning("Skipping email; invalid recipient: %s", payload.to_email)
        return False

    context = {"app_name": current_app.config.get("APP_NAME", "Testimonial Hub"), **payload.context}
    html_body = render_template(f"emails/{payload.template_name}.html", **context)
    text_body = render_template(f"emails/{payload.template_name}.txt", **context)

    msg = Message(
        subject=payload.subject,
        recipients=[payload.to_email],
        html=html_body,
        body=text_body,
    )

    for attempt in range(1, max(1, retries) + 1):
        try:
            mail.send(msg)
            logger.info("Email sent: subject=%s to=%s", payload.subject, payload.to_email)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.exception("Email send failed on attempt %s: %s", attempt, exc)
            if attempt < retries:
                time.sleep(backoff_s * attempt)

    return False


def send_verification_email(to_email: str, verification_link: str, display_name: str) -> bool:
    return send_templated_email(
        EmailPayload(
            to_email=to_email,
            subject="Verify your Testimonial Hub account",
            template_name="verify",
            context={"verification_link": verification_link, "display_name": display_name},
        )
    )


def send_password_reset_email(to_email: str, reset_link: str, display_name: str) -> bool:
    return send_templated_email(
        EmailPayload(
            to_email=to_email,
            subject="Reset your Testimonial Hub password",
            template_name="password_reset",
            context={"reset_link": reset_link, "display_name": display_name},
        )
    )


def send_new_testimonial_email(
    to_email: str,
    display_name: str,
    form_name: str,
    author_name: str,
    rating: Optional[int],
    excerpt: Optional[str],
) -> bool:
    return send_templated_email(
        EmailPayload(
            to_email=to_email,
            subject=f"New testimonial from {author_name}",
            template_name="new_testimonial",
            context={
                "display_name": display_name,
                "form_name": form_name,
                "author_name": author_name,
                "rating": rating,
                "excerpt": excerpt,
            },
        ),
        retries=current_app.config.get("MAIL_MAX_RETRIES", 3),
    )


def send_pending_digest_email(to_email: str, display_name: str, pending: list, total: Optional[int] = None) -> bool:
    total = len(pending) if total is None else total
    return send_templated_email(
        EmailPayload(
            to_email=to_email,
            subject=f"{total} testimonial(s) waiting for review",
            template_name="pending_digest",
            context={"display_name": display_name, "pending": pending, "pending_count": total},
        ),
        retries=current_app.config.get("MAIL_MAX_RETRIES", 3),
    )
