"""Applicant-facing texts and the per-state prompts.

Every state has exactly one prompt; re-prompting after an unexpected input
sends the same message again, so the applicant always sees which answer
the bot is waiting for.
"""

from __future__ import annotations

from datetime import date

from src.conversation.store import Session
from src.models.enums import Edition, InspectionStep, SessionState, UiAction
from src.schemas.application import Application
from src.schemas.messages import Button, OutgoingMessage

# ── Fixed notices ────────────────────────────────────────────────────

ALREADY_IN_PROGRESS = "You already have an application in progress. Please finish or cancel it first."
INSPECTING = "Thank you. Your application is being inspected, this can take up to a minute."
STILL_INSPECTING = "Your application is already being inspected. Please wait for the result."
SPONSOR_WAIT = (
    "Your application was received. The residents you named have been asked to "
    "confirm your visit; please wait for their answer."
)
STILL_WAITING = "We are still waiting for your sponsors to confirm. You will be notified here."
CANCELLED = "Your application was cancelled. Send the start keyword again to begin a new one."
TIMED_OUT = "The inspection took too long and your application has timed out. Please apply again."
GENERIC_ERROR = "Something went wrong while handling your answer. Please try the same step again."
RETRY_LATER = "An external service is not responding right now. Please try again in a few minutes."
SESSION_GONE = "This application is no longer active."
NOT_YOUR_SESSION = "These buttons belong to another applicant's application."
EMPTY_ANSWER = "Please type an answer."

# ── Prompts ──────────────────────────────────────────────────────────

_QUESTIONS: dict[SessionState, str] = {
    SessionState.IDENTITY_INPUT: (
        "What is your game handle? Bedrock players may prefix it with BE_."
    ),
    SessionState.NATIONALITY_INPUT: "What is your nationality?",
    SessionState.PERIOD_INPUT: (
        "What is the purpose of your visit, and when will you arrive and leave? "
        "For example: sightseeing, from 2026-05-01 10:00 to 2026-05-03 18:00."
    ),
    SessionState.COMPANIONS_INPUT: (
        "List the handles of anyone of your own nationality travelling with you, "
        "separated by commas. Companions of another nationality must apply separately. "
        "Type \"none\" if you travel alone."
    ),
    SessionState.SPONSOR_INPUT: (
        "If you will meet residents during your stay, type their names separated "
        "by commas. They will be asked to confirm. Type \"none\" otherwise."
    ),
}

NO_ANSWER_WORDS = frozenset({"none", "no", "nobody", "-", "n/a", "なし"})

INSPECTION_STEPS: dict[InspectionStep, str] = {
    InspectionStep.EXTRACTION: "Reading your application...",
    InspectionStep.DENY_LIST: "Checking the deny-list...",
    InspectionStep.IDENTITY: "Verifying your game account...",
    InspectionStep.COMPANIONS: "Verifying your companions...",
    InspectionStep.SPONSORS: "Looking up the residents you named...",
    InspectionStep.RULES: "Checking the length and purpose of your stay...",
}


def idle_timeout(seconds: float) -> OutgoingMessage:
    """Notice for a session evicted after ``seconds`` without activity."""
    minutes = round(seconds / 60)
    if minutes >= 1:
        span = f"{minutes} minute{'s' if minutes != 1 else ''}"
    else:
        span = f"{seconds:g} seconds"
    return OutgoingMessage(text=f"Your application was closed after {span} without activity. Please apply again.")


def _button(session: Session, label: str, action: UiAction, payload: str = "") -> Button:
    return Button(label=label, kind=action.value, target=session.id.hex, payload=payload)


def welcome(session: Session) -> OutgoingMessage:
    return OutgoingMessage(
        text=(
            "Welcome to the temporary entry inspection. You will be asked a few questions "
            "about your visit; your answers are reviewed automatically when you confirm."
        ),
        buttons=[
            _button(session, "Start", UiAction.BEGIN),
            _button(session, "Cancel", UiAction.CANCEL),
        ],
    )


def edition_menu(session: Session) -> OutgoingMessage:
    return OutgoingMessage(
        text="Which edition of the game do you play?",
        buttons=[
            _button(session, "Java", UiAction.EDITION, Edition.PRIMARY.value),
            _button(session, "Bedrock", UiAction.EDITION, Edition.SECONDARY.value),
            _button(session, "Cancel", UiAction.CANCEL),
        ],
    )


def confirmation(session: Session) -> OutgoingMessage:
    return OutgoingMessage(
        text=f"Please check your application:\n\n{session.answers.summary()}\n\nSubmit it?",
        buttons=[
            _button(session, "Confirm", UiAction.CONFIRM),
            _button(session, "Edit", UiAction.EDIT),
        ],
    )


def prompt_for(session: Session, note: str | None = None) -> OutgoingMessage:
    """The question the session is currently waiting on."""
    state = session.state
    if state == SessionState.START:
        message = welcome(session)
    elif state == SessionState.EDITION_SELECT:
        message = edition_menu(session)
    elif state == SessionState.CONFIRM_PENDING:
        message = confirmation(session)
    elif state == SessionState.SPONSOR_WAIT:
        message = OutgoingMessage(text=STILL_WAITING)
    elif state in _QUESTIONS:
        message = OutgoingMessage(
            text=_QUESTIONS[state],
            buttons=[_button(session, "Cancel", UiAction.CANCEL)],
        )
    else:
        message = OutgoingMessage(text=SESSION_GONE)

    if note:
        return OutgoingMessage(text=f"{note}\n\n{message.text}", buttons=message.buttons)
    return message


# ── Verdicts ─────────────────────────────────────────────────────────


def _period(application: Application) -> str:
    return f"{application.start or '?'} to {application.end or '?'}"


def _companions(application: Application) -> str:
    return ", ".join(c.handle for c in application.companions) or "none"


def approval(application: Application, today: date | None = None) -> OutgoingMessage:
    today = today or date.today()
    return OutgoingMessage(text="\n".join([
        "Temporary entry inspection result: APPROVED",
        "",
        f"Applicant: {application.identity}",
        f"Date of application: {today.isoformat()}",
        f"Purpose: {application.purpose}",
        f"Period: {_period(application)}",
        f"Companions: {_companions(application)}",
        f"Sponsors: {', '.join(application.sponsors) or 'none'}",
        "",
        "Notes:",
        "- If your stay is extended, tell us in this chat. Stays over 31 days in total need a new application.",
        "- The approval may be revoked if the application was inaccurate or the law is broken.",
        "- Your entry is announced to residents.",
        "Welcome!",
    ]))


def publication(application: Application, today: date | None = None) -> OutgoingMessage:
    today = today or date.today()
    return OutgoingMessage(text="\n".join([
        "Notice of temporary entry",
        "The following foreign player has been approved for entry.",
        "",
        f"Applicant: {application.identity}",
        f"Nationality: {application.nationality}",
        f"Date of application: {today.isoformat()}",
        f"Purpose: {application.purpose}",
        f"Period: {_period(application)}",
        f"Companions: {_companions(application)}",
        f"Sponsors: {', '.join(application.sponsors) or 'none'}",
    ]))


def rejection(reason: str) -> OutgoingMessage:
    return OutgoingMessage(text=f"Temporary entry inspection result: REJECTED\n\n{reason}")


def sponsor_request(application: Application) -> str:
    """Text of the yes/no prompt sent to each sponsor."""
    return "\n".join([
        f"{application.identity} ({application.nationality}) applied for temporary entry",
        "and named you as a resident they will meet.",
        "",
        f"Purpose: {application.purpose}",
        f"Period: {_period(application)}",
        "",
        "Do you confirm this visit?",
    ])
