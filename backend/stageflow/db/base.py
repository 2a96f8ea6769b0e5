from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import declarative_base

# Create a base class for SQLAlchemy models
Base = declarative_base(cls=AsyncAttrs)
