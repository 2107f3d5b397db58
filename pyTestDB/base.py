from sqlalchemy.orm import declarative_base

# 所有 ORM 模型的基类
Base = declarative_base()
