from dataclasses import dataclass


@dataclass
class QueueStats:
    name: str
    total: int
    pending: int
    leased: int
    completed: int
    retrying: int
    failed: int

    @staticmethod
    def from_row(row: tuple) -> "QueueStats":
        (
            name,
            total,
            pending,
            leased,
            completed,
            retrying,
            failed,
        ) = row
        return QueueStats(
            name=name,
            total=total or 0,
            pending=pending or 0,
            leased=leased or 0,
            completed=completed or 0,
            retrying=retrying or 0,
            failed=failed or 0,
        )
