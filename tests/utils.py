from typing import Dict, Optional

from src.branchchat.security.auth import Identity, create_access_token


def auth_headers(user_id: str = "alice", plan: str = "free", name: Optional[str] = None) -> Dict[str, str]:
    token = create_access_token(user_id, plan=plan, name=name or user_id.capitalize())
    return {"Authorization": f"Bearer {token}"}


def identity(user_id: str = "alice", user_type: str = "free") -> Identity:
    return Identity(user_id=user_id, name=user_id.capitalize(), user_type=user_type, subject_key=user_id)


def anonymous(ip: str = "10.0.0.1") -> Identity:
    return Identity(
        user_id=f"anonymous_{ip}",
        name="Anonymous",
        user_type="anonymous",
        subject_key=f"ip:{ip}",
    )
