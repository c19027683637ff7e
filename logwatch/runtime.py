from __future__ import annotations

from typing import Any, Optional

from .agent import Agent, AgentOptions
from .providers import BaseTransport, build_transport
from .store import Store


class Runtime:
    """
    Hosts the completion transport and an optional global store.

    Every agent created by `agent()` shares the transport and sees the global
    store through `context.global_store`.
    """

    def __init__(self, transport: Optional[BaseTransport] = None, global_store: Optional[Store] = None) -> None:
        self._transport = transport or build_transport()
        self._global_store = global_store

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    @property
    def global_store(self) -> Optional[Store]:
        return self._global_store

    async def aclose(self) -> None:
        await self._transport.aclose()

    def agent(self, options: Optional[AgentOptions] = None, **kwargs: Any) -> Agent:
        """Create an agent from AgentOptions or from AgentOptions keyword arguments."""
        if options is None:
            options = AgentOptions(**kwargs)
        elif kwargs:
            raise TypeError("Pass either AgentOptions or keyword arguments, not both")
        return Agent(options, self._transport, self._global_store)
