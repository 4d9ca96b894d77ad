from tab_agent_core.router.message_router import MessageRouter
from tab_agent_core.router.tab_transport import LocalTabTransport, TabTransport

__all__ = ["MessageRouter", "LocalTabTransport", "TabTransport"]
