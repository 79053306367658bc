from sqlalchemy import Column, Integer, String
from servicebay.database import Base


class Counter(Base):
    """Named monotonic counter advanced with an atomic UPDATE ... RETURNING."""

    __tablename__ = "counters"

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<Counter {self.name}={self.value}>"
