from sqlalchemy import Column, DateTime, Integer, Text

from weixin_relay.database import Base


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    open_id = Column(Text, nullable=False, unique=True)
    init_message_role = Column(Text)
    init_message_content = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
