"""
セッションレコード管理

セッション名 → 使用状態 の対応表。ロックもI/Oも持たない純粋なデータ構造で、
呼び出し側（プール）が排他ロックを保持したまま操作する前提。
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .exceptions import UnknownSessionError


@dataclass
class SessionRecord:
    """セッション1件分の状態"""
    in_use: bool = True
    # 最後に返却された時刻（in_use=False のときだけ有効）
    last_released_at: Optional[float] = None


class SessionRegistry:
    """
    プール内部のセッションレコード表

    - レコード数は capacity を超えない
    - 1つのセッション名に対するレコードは高々1件
    """

    def __init__(self, capacity: int, idle_timeout: float):
        self.capacity = capacity
        self.idle_timeout = idle_timeout
        self._records: Dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def occupancy(self) -> int:
        """管理しているセッション数"""
        return len(self._records)

    def has_room(self) -> bool:
        return len(self._records) < self.capacity

    def in_use_count(self) -> int:
        return sum(1 for r in self._records.values() if r.in_use)

    def names(self) -> List[str]:
        return list(self._records)

    def get(self, name: str) -> Optional[SessionRecord]:
        return self._records.get(name)

    def add_in_use(self, name: str) -> SessionRecord:
        """新しいセッションを使用中として登録"""
        if name in self._records:
            raise ValueError(f"session already tracked: {name}")
        if not self.has_room():
            raise ValueError(f"session registry is full ({self.capacity})")
        record = SessionRecord(in_use=True)
        self._records[name] = record
        return record

    def first_free(self) -> Optional[Tuple[str, SessionRecord]]:
        """
        未使用のレコードを1件返す

        どのレコードが選ばれるかは保証しない（LRU/FIFOではない）。
        """
        for name, record in self._records.items():
            if not record.in_use:
                return name, record
        return None

    def is_expired(self, record: SessionRecord, now: float) -> bool:
        """返却からidle_timeoutを超えて放置されているか"""
        if record.in_use or record.last_released_at is None:
            return False
        return now - record.last_released_at > self.idle_timeout

    def expired_free(self, now: float) -> List[str]:
        """期限切れの未使用セッション名一覧"""
        return [name for name, record in self._records.items() if self.is_expired(record, now)]

    def mark_in_use(self, name: str) -> SessionRecord:
        record = self._require(name)
        record.in_use = True
        record.last_released_at = None
        return record

    def mark_released(self, name: str, now: float) -> SessionRecord:
        """
        未使用に戻し、返却時刻を記録

        既に未使用のレコードは返却時刻だけ更新する。

        Raises:
            UnknownSessionError: 管理外のセッションの場合
        """
        record = self._require(name)
        record.in_use = False
        record.last_released_at = now
        return record

    def discard(self, name: str) -> Optional[SessionRecord]:
        return self._records.pop(name, None)

    def _require(self, name: str) -> SessionRecord:
        record = self._records.get(name)
        if record is None:
            raise UnknownSessionError(name)
        return record
