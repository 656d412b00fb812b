"""工具协议客户端：JSON-RPC 2.0，服务器推送流（SSE）+ 客户端 POST"""

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urljoin

import httpx

from .config import McpServerConfig
from .errors import McpError, McpRpcError, McpServerNotFoundError, McpTimeoutError
from .models import ConnectionStatus, ToolDescriptor

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "OmniAgent", "version": "1.0.0"}
RPC_TIMEOUT = 10.0
STREAM_TIMEOUT = httpx.Timeout(10.0, read=None)


@dataclass
class PendingCall:
    """等待中的远程调用：收到响应或超时后立即移除"""
    request_id: int
    method: str
    future: asyncio.Future
    deadline: float


class McpClient:
    """
    单个工具服务器的连接，状态流转：
    disconnected -> connecting -> (收到 endpoint 事件) initialize -> initialized 通知
    -> tools/list -> connected。流出错进入 error，不自动重连。
    """

    def __init__(self, name: str, sse_url: str, http: Optional[httpx.AsyncClient] = None,
                 rpc_timeout: float = RPC_TIMEOUT):
        self.name = name
        self.sse_url = sse_url
        self.post_url: Optional[str] = None
        self.status = ConnectionStatus.DISCONNECTED
        self.tools: List[Dict[str, Any]] = []
        self.server_info: Dict[str, Any] = {}
        self.rpc_timeout = rpc_timeout
        self.pending: Dict[int, PendingCall] = {}
        self._http = http or httpx.AsyncClient()
        self._owns_http = http is None
        self._ids = itertools.count()
        self._ready: Optional[asyncio.Future] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._init_task: Optional[asyncio.Task] = None
        self._closing = False

    async def connect(self):
        if self.status == ConnectionStatus.CONNECTED:
            return
        logger.info("[MCP %s] 连接 %s ...", self.name, self.sse_url)
        self.status = ConnectionStatus.CONNECTING
        self._closing = False
        self._ready = asyncio.get_running_loop().create_future()
        self._stream_task = asyncio.create_task(self._run_stream())
        await asyncio.shield(self._ready)

    async def _run_stream(self):
        try:
            async with self._http.stream(
                "GET", self.sse_url,
                headers={"Accept": "text/event-stream"},
                timeout=STREAM_TIMEOUT,
            ) as response:
                response.raise_for_status()
                event, data_lines = "message", []
                async for line in response.aiter_lines():
                    if line == "":
                        if data_lines:
                            self._dispatch(event, "\n".join(data_lines))
                        event, data_lines = "message", []
                        continue
                    if line.startswith(":"):
                        continue
                    field_name, _, value = line.partition(":")
                    if value.startswith(" "):
                        value = value[1:]
                    if field_name == "event":
                        event = value
                    elif field_name == "data":
                        data_lines.append(value)
            if not self._closing:
                raise McpError("event stream closed by server")
        except (httpx.HTTPError, McpError) as exc:
            logger.error("[MCP %s] 流错误: %s", self.name, exc)
            self.status = ConnectionStatus.ERROR
            self._settle_ready(exc)
        except Exception as exc:
            logger.exception("[MCP %s] 处理推送消息时出错", self.name)
            self.status = ConnectionStatus.ERROR
            self._settle_ready(exc)

    def _dispatch(self, event: str, data: str):
        if event == "endpoint":
            self.post_url = urljoin(self.sse_url, data.strip())
            logger.info("[MCP %s] 收到 endpoint: %s", self.name, self.post_url)
            self._init_task = asyncio.create_task(self._initialize())
            return
        if event == "message":
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("[MCP %s] 忽略无法解析的消息: %r", self.name, data)
                return
            self.handle_message(payload)

    def handle_message(self, payload: Dict[str, Any]):
        """按 id 关联响应；通知和未知 id 直接忽略"""
        if not isinstance(payload, dict) or "id" not in payload:
            return
        request_id = payload["id"]
        if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
            logger.warning("[MCP %s] 忽略 id 非法的响应: %r", self.name, request_id)
            return
        call = self.pending.pop(request_id, None)
        if call is None or call.future.done():
            return
        error = payload.get("error")
        if error:
            if isinstance(error, dict):
                call.future.set_exception(McpRpcError(
                    str(error.get("message", "RPC error")), error.get("code"), error.get("data")
                ))
            else:
                call.future.set_exception(McpRpcError(str(error)))
        else:
            call.future.set_result(payload.get("result"))

    async def _initialize(self):
        try:
            result = await self.request("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"roots": {"listChanged": False}, "sampling": {}},
                "clientInfo": CLIENT_INFO,
            })
            self.server_info = (result or {}).get("serverInfo", {})
            logger.info("[MCP %s] 初始化完成，服务器: %s", self.name, self.server_info.get("name"))
            await self.notify("notifications/initialized")
            await self.refresh_tools()
        except (McpError, httpx.HTTPError) as exc:
            logger.error("[MCP %s] 初始化失败: %s", self.name, exc)
            self.status = ConnectionStatus.ERROR
            self._settle_ready(exc)
            return
        self.status = ConnectionStatus.CONNECTED
        self._settle_ready(None)

    def _settle_ready(self, exc: Optional[BaseException]):
        if self._ready is None or self._ready.done():
            return
        if exc is None:
            self._ready.set_result(None)
        else:
            self._ready.set_exception(exc if isinstance(exc, McpError) else McpError(str(exc)))

    async def refresh_tools(self) -> List[Dict[str, Any]]:
        result = await self.request("tools/list")
        self.tools = list((result or {}).get("tools") or [])
        logger.info("[MCP %s] 已加载 %d 个工具", self.name, len(self.tools))
        return self.tools

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """发起关联请求；响应经由推送流按 id 返回，超时后抛出 McpTimeoutError"""
        if not self.post_url:
            raise McpError("No POST endpoint established for MCP server.")
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        call = PendingCall(
            request_id=request_id,
            method=method,
            future=loop.create_future(),
            deadline=loop.time() + self.rpc_timeout,
        )
        # 先登记再发送，避免响应先于登记到达
        self.pending[request_id] = call
        try:
            await self._post({"jsonrpc": "2.0", "id": request_id, "method": method,
                              "params": params or {}})
            remaining = max(call.deadline - loop.time(), 0)
            return await asyncio.wait_for(call.future, timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning("[MCP %s] %s 超时 (id=%s)", self.name, method, request_id)
            raise McpTimeoutError(f"RPC Timeout: {method}")
        finally:
            self.pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None):
        """发送通知：没有 id，不等待响应"""
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            payload["params"] = params
        await self._post(payload)

    async def call_tool(self, tool: str, args: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("tools/call", {"name": tool, "arguments": args or {}})

    async def _post(self, payload: Dict[str, Any]):
        try:
            response = await self._http.post(self.post_url, json=payload)
        except httpx.HTTPError as exc:
            raise McpError(f"MCP Post Error: {exc}")
        if response.is_error:
            raise McpError(f"MCP Post Error: {response.status_code} {response.reason_phrase}")

    async def close(self):
        """终止推送流并丢弃所有状态"""
        self._closing = True
        for task in (self._init_task, self._stream_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        for call in self.pending.values():
            if not call.future.done():
                call.future.cancel()
        self.pending.clear()
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        self.tools = []
        self.post_url = None
        self.status = ConnectionStatus.DISCONNECTED
        if self._owns_http:
            await self._http.aclose()


ServerSpec = Union[McpServerConfig, Dict[str, str]]


class McpManager:
    """管理多个工具服务器连接；sync_servers 是声明式的对账"""

    def __init__(self, http: Optional[httpx.AsyncClient] = None, rpc_timeout: float = RPC_TIMEOUT):
        self.clients: Dict[str, McpClient] = {}
        self.rpc_timeout = rpc_timeout
        self._http = http
        self._connect_tasks: Dict[str, asyncio.Task] = {}

    async def sync_servers(self, servers: Iterable[ServerSpec]):
        """新出现的服务器发起连接，不再出现的断开；已存在的保持不动"""
        wanted: Dict[str, str] = {}
        for server in servers:
            if isinstance(server, dict):
                wanted[server["name"]] = server["url"]
            else:
                wanted[server.name] = server.url

        for name in list(self.clients):
            if name not in wanted:
                logger.info("[MCP] 移除服务器 %s", name)
                await self._remove(name)

        for name, url in wanted.items():
            if name in self.clients:
                continue
            client = McpClient(name, url, http=self._http, rpc_timeout=self.rpc_timeout)
            self.clients[name] = client
            # 不等待连接完成，避免阻塞调用方
            self._connect_tasks[name] = asyncio.create_task(self._connect(client))

    async def _connect(self, client: McpClient):
        try:
            await client.connect()
        except McpError as exc:
            logger.error("[MCP] 连接 %s 失败: %s", client.name, exc)

    async def _remove(self, name: str):
        client = self.clients.pop(name)
        task = self._connect_tasks.pop(name, None)
        if task is not None and not task.done():
            task.cancel()
        await client.close()

    async def wait_until_settled(self):
        """等待所有进行中的连接尝试结束（成功或失败）"""
        tasks = [t for t in self._connect_tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_all_tools(self) -> List[ToolDescriptor]:
        """所有已连接服务器的工具，不去重、不改名，以 source 区分来源"""
        tools: List[ToolDescriptor] = []
        for client in self.clients.values():
            if client.status != ConnectionStatus.CONNECTED:
                continue
            for tool in client.tools:
                tools.append(ToolDescriptor(
                    name=str(tool.get("name", "")),
                    description=str(tool.get("description", "")),
                    input_schema=dict(tool.get("inputSchema") or {}),
                    source=client.name,
                ))
        return tools

    async def call_tool(self, source: str, tool: str, args: Optional[Dict[str, Any]] = None) -> Any:
        client = self.clients.get(source)
        if client is None:
            raise McpServerNotFoundError(source)
        return await client.call_tool(tool, args)

    async def close(self):
        for name in list(self.clients):
            await self._remove(name)
