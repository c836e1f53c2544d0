"""Turn the displayed message list into rows with day dividers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable, List, Optional, Union

from .models import DisplayedMessage

_MONTHS = (
	"January",
	"February",
	"March",
	"April",
	"May",
	"June",
	"July",
	"August",
	"September",
	"October",
	"November",
	"December",
)


@dataclass(slots=True, frozen=True)
class DayDivider:
	day: date
	label: str


@dataclass(slots=True, frozen=True)
class MessageRow:
	message: DisplayedMessage
	mine: bool
	pending: bool
	seen: bool = False


RenderRow = Union[DayDivider, MessageRow]


def day_label(day: date, today: date) -> str:
	"""Label for a calendar day: "Today", "Yesterday" or "January 2, 2024"."""
	if day == today:
		return "Today"
	if day == today - timedelta(days=1):
		return "Yesterday"
	return f"{_MONTHS[day.month - 1]} {day.day}, {day.year}"


def local_day(moment: datetime, tz: tzinfo) -> date:
	if moment.tzinfo is None:
		moment = moment.replace(tzinfo=timezone.utc)
	return moment.astimezone(tz).date()


def render_rows(
	items: Iterable[DisplayedMessage],
	current_user_id: str,
	*,
	tz: tzinfo = timezone.utc,
	today: Optional[date] = None,
	seen_message_id: Optional[str] = None,
) -> List[RenderRow]:
	"""Insert a divider before the first message of each local calendar day."""
	if today is None:
		today = datetime.now(tz).date()
	rows: List[RenderRow] = []
	previous: Optional[date] = None
	for message in items:
		day = local_day(message.created_at, tz)
		if day != previous:
			rows.append(DayDivider(day=day, label=day_label(day, today)))
			previous = day
		rows.append(
			MessageRow(
				message=message,
				mine=message.sender_id == current_user_id,
				pending=message.pending,
				seen=seen_message_id is not None and message.id == seen_message_id,
			)
		)
	return rows
