"""Plain email bodies for drafts.

These are starting points a rep reviews and may edit before approval;
nothing rendered here is sent without an approved draft.
"""

import html
import re

from parley.scheduler.time_parser import ProposedTime

_TAG_RE = re.compile(r"<[^>]+>")
_QUOTE_HEADER_RE = re.compile(
    r"^(?:on .+ wrote:|-{2,}\s*original message\s*-{2,}|from:\s.+|sent from my .+)$",
    re.IGNORECASE,
)
_BANNER_RE = re.compile(
    r"^(?:caution|external email|\[external\]|warning):.*$", re.IGNORECASE
)


def clean_email_body(body: str) -> str:
    """Strip markup, quoted history and security banners from an inbound reply."""
    text = re.sub(r"(?i)<br\s*/?>|</p>|</div>", "\n", body)
    text = html.unescape(_TAG_RE.sub("", text))
    kept: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if _QUOTE_HEADER_RE.match(stripped):
            break
        if stripped.startswith(">") or _BANNER_RE.match(stripped):
            continue
        kept.append(stripped)
    return re.sub(r"\n{3,}", "\n\n", "\n".join(kept)).strip()


def reply_subject(subject: str | None, fallback: str) -> str:
    base = subject or fallback
    return base if base.lower().startswith("re:") else f"Re: {base}"


def _greeting(name: str | None) -> str:
    return f"Hi {name.split()[0]}," if name else "Hi,"


def _time_list(times: list[ProposedTime]) -> str:
    return "\n".join(f"  {i}. {t.display}" for i, t in enumerate(times, start=1))


def proposal_email(contact_name: str | None, title: str, times: list[ProposedTime], duration_minutes: int) -> str:
    return (
        f"{_greeting(contact_name)}\n\n"
        f"I'd love to set up a {duration_minutes}-minute call about {title}. "
        f"Would any of these times work for you?\n\n"
        f"{_time_list(times)}\n\n"
        "Just reply with the one that suits you best, or suggest another time.\n"
    )


def follow_up_email(contact_name: str | None, times: list[ProposedTime], attempt: int) -> str:
    opener = "Just following up on my note below." if attempt <= 1 else "Circling back once more on this."
    listing = f" These times are still open:\n\n{_time_list(times)}\n" if times else ""
    return f"{_greeting(contact_name)}\n\n{opener}{listing}\nHappy to find something else if none of these fit.\n"


def counter_proposal_ack(contact_name: str | None, times: list[ProposedTime]) -> str:
    if len(times) == 1:
        body = f"{times[0].display} works on our side. Shall I send over an invite for that time?"
    else:
        body = f"Thanks for the options. Any of these work on our side:\n\n{_time_list(times)}\n\nWhich would you prefer?"
    return f"{_greeting(contact_name)}\n\n{body}\n"


def reminder_email(contact_name: str | None, when: str, meeting_link: str | None) -> str:
    link = f"\nJoin here: {meeting_link}\n" if meeting_link else ""
    return f"{_greeting(contact_name)}\n\nLooking forward to our call on {when}.{link}\nSee you then!\n"


def question_response(contact_name: str | None, question: str | None) -> str:
    asked = f'You asked: "{question}"\n\n' if question else ""
    return f"{_greeting(contact_name)}\n\n{asked}[Answer here]\n\nOnce that's settled, happy to lock in a time.\n"
