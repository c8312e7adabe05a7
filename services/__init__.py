"""Chat Sync Core Services Package"""

from .message_store import MessageStore
from .delivery_state import DeliveryStateMachine
from .echo_reconciler import EchoReconciler, EchoOutcome
from .conversation_index import ConversationIndex
from .read_receipts import ReadReceiptBatcher
from .realtime_transport import RealtimeTransport, ConnectionState, WebSocketMessage
from .provider_client import ChatApiClient
from .sync_facade import SyncFacade

__all__ = [
    'MessageStore',
    'DeliveryStateMachine',
    'EchoReconciler',
    'EchoOutcome',
    'ConversationIndex',
    'ReadReceiptBatcher',
    'RealtimeTransport',
    'ConnectionState',
    'WebSocketMessage',
    'ChatApiClient',
    'SyncFacade',
]
