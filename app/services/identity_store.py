"""身份存储（只读）"""

from typing import Optional

from sqlalchemy.orm import Session

from app.models.user import User


class IdentityStore:

    def __init__(self, db: Session):
        self.db = db

    def fetch_user(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def fetch_identity(self, user_id: int) -> Optional[dict]:
        user = self.fetch_user(user_id)
        if user is None:
            return None
        return {"id": user.id, "name": user.name, "role": user.role}
