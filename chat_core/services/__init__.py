"""运行时服务：广播通道、连通性监控与流式投递协调器。"""

from chat_core.services.connectivity import ConnectivityMonitor
from chat_core.services.coordinator import StreamingDeliveryCoordinator

__all__ = ["ConnectivityMonitor", "StreamingDeliveryCoordinator"]
