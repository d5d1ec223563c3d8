from typing import Literal, Optional

from models.entities.couchbase.users import User, UserData


def user_key(wallet_address: str) -> str:
    """Users are keyed by their lower-cased wallet address."""
    return wallet_address.strip().lower()


async def user_get(user_id: str) -> Optional[User]:
    return await User.get(user_id)


async def user_create_if_not_exists_and_get(
    wallet_address: str,
    role: Literal["farmer", "buyer"] = "buyer",
) -> User:
    key = user_key(wallet_address)
    existing_user = await User.get(key)
    if existing_user:
        return existing_user
    new_user_data = UserData(wallet_address=wallet_address.strip(), role=role)
    return await User.create_or_update(key, new_user_data, user_id=key)
