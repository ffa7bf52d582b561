from weixin_relay.models.image import Image
from weixin_relay.models.message import Message
from weixin_relay.models.user_settings import UserSettings

__all__ = [
    "UserSettings",
    "Message",
    "Image",
]
