import uuid
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from groupbuy.db.models import NotificationQueueEntry, SystemCommand
from groupbuy.utils.errors import UnknownSystemCommandError

SYSTEM_PREFIX = "SYSTEM_"

SENTINELS: Dict[SystemCommand, str] = {
    SystemCommand.ORDER_OPENED: "SYSTEM_ORDER_OPENED",
    SystemCommand.REMINDER_1H: "SYSTEM_REMINDER_1H",
    SystemCommand.REMINDER_10M: "SYSTEM_REMINDER_10M",
    SystemCommand.ORDER_CLOSED: "SYSTEM_ORDER_CLOSED",
    SystemCommand.GENERAL_ORDER_SUMMARY: "SYSTEM_GENERAL_ORDER_SUMMARY",
    SystemCommand.SUPPLIER_REPORT: "SYSTEM_SUPPLIER_REPORT",
    SystemCommand.ORDER_CONFIRMATION: "SYSTEM_ORDER_CONFIRMATION",
}
_COMMANDS_BY_SENTINEL = {sentinel: command for command, sentinel in SENTINELS.items()}

# Older producers queued both reminders under one sentinel with the window in the body
LEGACY_REMINDER_SENTINEL = "SYSTEM_ORDER_REMINDER"
LEGACY_REMINDER_COMMAND = "GENERAL_ORDER_REMINDER"
_LEGACY_REMINDER_VARIANTS = {
    "1_HOUR": SystemCommand.REMINDER_1H,
    "1H": SystemCommand.REMINDER_1H,
    "10_MINUTE": SystemCommand.REMINDER_10M,
    "10M": SystemCommand.REMINDER_10M,
}

SUMMARY_AUTO_CLOSED = "AUTO_CLOSED"
SUMMARY_MANUAL = "MANUAL"


def is_system_recipient(recipient: str) -> bool:
    return recipient.startswith(SYSTEM_PREFIX)


class SystemNotification(BaseModel):
    """
    Tagged variant for a fan-out notification: which command, for which order,
    and an optional variant (the summary's trigger reason, or the participant
    order a confirmation is for).

    ``encode_body``/``parse`` keep the legacy ``COMMAND:orderId[:variant]``
    string form readable and writable. Confirmations use the older
    ``USER_ORDER_CONFIRMATION:participantOrderId:orderId`` layout.
    """

    model_config = ConfigDict(frozen=True)

    command: SystemCommand
    order_id: str
    variant: Optional[str] = None

    @property
    def sentinel(self) -> str:
        return SENTINELS[self.command]

    @property
    def participant_order_id(self) -> Optional[str]:
        if self.command == SystemCommand.ORDER_CONFIRMATION:
            return self.variant
        return None

    def encode_body(self) -> str:
        if self.command == SystemCommand.ORDER_CONFIRMATION:
            return ":".join([self.command.value, self.variant or "", self.order_id])
        parts = [self.command.value, self.order_id]
        if self.variant:
            parts.append(self.variant)
        return ":".join(parts)

    @classmethod
    def opened(cls, order_id: str) -> "SystemNotification":
        return cls(command=SystemCommand.ORDER_OPENED, order_id=order_id)

    @classmethod
    def closed(cls, order_id: str) -> "SystemNotification":
        return cls(command=SystemCommand.ORDER_CLOSED, order_id=order_id)

    @classmethod
    def reminder_1h(cls, order_id: str) -> "SystemNotification":
        return cls(command=SystemCommand.REMINDER_1H, order_id=order_id)

    @classmethod
    def reminder_10m(cls, order_id: str) -> "SystemNotification":
        return cls(command=SystemCommand.REMINDER_10M, order_id=order_id)

    @classmethod
    def summary(
        cls, order_id: str, reason: str = SUMMARY_AUTO_CLOSED
    ) -> "SystemNotification":
        return cls(
            command=SystemCommand.GENERAL_ORDER_SUMMARY,
            order_id=order_id,
            variant=reason,
        )

    @classmethod
    def supplier_report(cls, order_id: str) -> "SystemNotification":
        return cls(command=SystemCommand.SUPPLIER_REPORT, order_id=order_id)

    @classmethod
    def order_confirmation(
        cls, order_id: str, participant_order_id: str
    ) -> "SystemNotification":
        return cls(
            command=SystemCommand.ORDER_CONFIRMATION,
            order_id=order_id,
            variant=participant_order_id,
        )

    @classmethod
    def parse(cls, recipient: str, body: str) -> "SystemNotification":
        """Decode the legacy sentinel + body encoding; raises UnknownSystemCommandError."""
        parts = (body or "").strip().split(":")

        if recipient == LEGACY_REMINDER_SENTINEL:
            if len(parts) != 3 or parts[0] != LEGACY_REMINDER_COMMAND:
                raise UnknownSystemCommandError(
                    f"Malformed reminder body for {recipient}: {body!r}"
                )
            command = _LEGACY_REMINDER_VARIANTS.get(parts[2].upper())
            if command is None:
                raise UnknownSystemCommandError(
                    f"Unknown reminder window {parts[2]!r}"
                )
            return cls(command=command, order_id=_parse_order_id(parts[1]))

        # Confirmations may be addressed to the participant instead of a sentinel
        if parts[0] == SystemCommand.ORDER_CONFIRMATION.value:
            if len(parts) != 3:
                raise UnknownSystemCommandError(
                    f"Confirmation body must be COMMAND:participantOrderId:orderId, "
                    f"got {body!r}"
                )
            return cls.order_confirmation(
                _parse_order_id(parts[2]), _parse_order_id(parts[1])
            )

        command = _COMMANDS_BY_SENTINEL.get(recipient)
        if command is None:
            raise UnknownSystemCommandError(f"Unknown system recipient: {recipient}")

        # Supplier reports were also queued with a bare order id as the body
        if command == SystemCommand.SUPPLIER_REPORT and len(parts) == 1:
            return cls.supplier_report(_parse_order_id(parts[0]))

        if len(parts) < 2 or parts[0] != command.value:
            raise UnknownSystemCommandError(
                f"Body does not match {recipient}: {body!r}"
            )

        variant = parts[2] if len(parts) > 2 and parts[2] else None
        if command == SystemCommand.GENERAL_ORDER_SUMMARY:
            if len(parts) != 3 or not variant:
                raise UnknownSystemCommandError(
                    f"Summary body must be COMMAND:orderId:reason, got {body!r}"
                )
        elif len(parts) > 2:
            raise UnknownSystemCommandError(f"Unexpected variant in {body!r}")

        return cls(command=command, order_id=_parse_order_id(parts[1]), variant=variant)

    @classmethod
    def from_entry(cls, entry: NotificationQueueEntry) -> "SystemNotification":
        """Prefer the structured columns and fall back to parsing recipient/body."""
        if entry.system_command is not None and entry.general_order_id:
            if (
                entry.system_command == SystemCommand.ORDER_CONFIRMATION
                and not entry.command_variant
            ):
                raise UnknownSystemCommandError(
                    f"Confirmation entry {entry.id} has no participant order"
                )
            return cls(
                command=entry.system_command,
                order_id=str(entry.general_order_id),
                variant=entry.command_variant,
            )
        return cls.parse(entry.recipient, entry.body)


def _parse_order_id(raw: str) -> str:
    try:
        return str(uuid.UUID(raw))
    except (ValueError, AttributeError):
        raise UnknownSystemCommandError(f"Malformed order id: {raw!r}")
