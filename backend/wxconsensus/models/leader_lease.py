from sqlalchemy import BigInteger, Column, String
from wxconsensus.db.base import Base

class LeaderLease(Base):
    __tablename__ = "leader_lease"
    id = Column(String(64), primary_key=True)
    holder_id = Column(String(128), nullable=False)
    timestamp_ms = Column(BigInteger, nullable=False)
