"""单次信号：用于在主循环中等待人工审批结果"""

import asyncio
from typing import Optional


class ApprovalSignal:
    """
    一次性信号。必须先创建（armed）再把选择展示给用户，
    approve / reject / cancel 中只有第一个调用生效。
    wait() 返回 True（批准）、False（拒绝）或 None（取消）。
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def approve(self) -> bool:
        return self._resolve(True)

    def reject(self) -> bool:
        return self._resolve(False)

    def cancel(self) -> bool:
        return self._resolve(None)

    def _resolve(self, outcome: Optional[bool]) -> bool:
        if self._future.done():
            return False
        self._future.set_result(outcome)
        return True

    async def wait(self) -> Optional[bool]:
        return await asyncio.shield(self._future)
