import asyncio
import logging
import typing as t


#: Type for the key of a listener
ListenerKey = t.Tuple[str, int]


class ListenerTracker:
    """
    Tracks TCP listeners opened on local addresses.

    The listeners exist so that something is listening on each port, e.g. for automatic
    port forwarding mechanisms to pick up. Accepted connections are closed immediately.
    """
    def __init__(self):
        self._listeners: t.Dict[ListenerKey, asyncio.AbstractServer] = {}
        self._logger = logging.getLogger(__name__)

    async def _handle_connection(self, reader, writer):
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass

    async def add(self, address: str, port: int):
        """
        Opens a listener on the given address and port.

        Adding a listener that is already open does nothing.
        """
        key = (address, port)
        if key in self._listeners:
            self._logger.debug("Listener already open on %s:%d", address, port)
            return
        server = await asyncio.start_server(self._handle_connection, address, port)
        self._listeners[key] = server
        self._logger.info("Opened listener on %s:%d", address, port)

    async def remove(self, address: str, port: int):
        """
        Closes the listener on the given address and port.

        Removing a listener that is not open does nothing.
        """
        server = self._listeners.pop((address, port), None)
        if server is None:
            self._logger.debug("No listener open on %s:%d", address, port)
            return
        server.close()
        await server.wait_closed()
        self._logger.info("Closed listener on %s:%d", address, port)

    def keys(self) -> t.List[ListenerKey]:
        """
        Returns the keys of the currently open listeners.
        """
        return sorted(self._listeners)

    async def close(self):
        """
        Closes all the open listeners.
        """
        for address, port in list(self._listeners):
            await self.remove(address, port)
