from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import typer

from salesboard.domain.stages import NotifyKind


class Notifier(Protocol):
    def notify(self, kind: NotifyKind, message: str) -> None: ...


@dataclass(frozen=True)
class Notification:
    kind: NotifyKind
    message: str


@dataclass
class CollectingNotifier:
    notifications: list[Notification] = field(default_factory=list)

    def notify(self, kind: NotifyKind, message: str) -> None:
        self.notifications.append(Notification(kind=NotifyKind(kind), message=message))

    @property
    def errors(self) -> list[Notification]:
        return [n for n in self.notifications if n.kind == NotifyKind.ERROR]

    @property
    def successes(self) -> list[Notification]:
        return [n for n in self.notifications if n.kind == NotifyKind.SUCCESS]


class EchoNotifier:
    """Prints notifications for the CLI; errors go to stderr."""

    def __init__(self) -> None:
        self.error_count = 0

    def notify(self, kind: NotifyKind, message: str) -> None:
        if NotifyKind(kind) == NotifyKind.ERROR:
            self.error_count += 1
            typer.secho(f"Error: {message}", err=True, fg=typer.colors.RED)
            return
        typer.secho(message, fg=typer.colors.GREEN)
