"""记忆模块：按 key 追加保存的暂存区，供决策步骤读取"""

import copy
import json
from typing import Any, Dict, List, Tuple


class AgentMemory:
    """
    只追加的键值暂存区。

    - key 在第一次写入时创建
    - 值只会追加，不会删除或原地修改
    - 读取总是返回副本或序列化文本，外部无法借此修改内部状态
    """

    def __init__(self):
        self._store: Dict[str, List[Any]] = {}

    def save(self, key: str, value: Any) -> int:
        """保存数据，value 为列表/元组时逐个追加（批量语义）。返回追加的条目数"""
        bucket = self._store.setdefault(key, [])
        if isinstance(value, (list, tuple)):
            items = [copy.deepcopy(item) for item in value]
        else:
            items = [copy.deepcopy(value)]
        bucket.extend(items)
        return len(items)

    def items(self, key: str) -> Tuple[Any, ...]:
        return tuple(copy.deepcopy(self._store.get(key, [])))

    def keys(self) -> List[str]:
        return list(self._store)

    def snapshot(self) -> str:
        """序列化后的只读视图，直接拼进下一轮 prompt"""
        return json.dumps(self._store, indent=2, ensure_ascii=False, default=str)

    def to_dict(self) -> Dict[str, List[Any]]:
        return copy.deepcopy(self._store)

    def __len__(self) -> int:
        return sum(len(v) for v in self._store.values())
