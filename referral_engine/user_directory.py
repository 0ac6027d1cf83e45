from abc import ABC, abstractmethod
from typing import Optional

from referral_engine.data_access.repository import Repository
from referral_engine.models import User


class UserDirectoryInterface(ABC):

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:
        pass

    @abstractmethod
    def find_by_phone_number(self, phone_number: str) -> Optional[User]:
        pass


class DatabaseUserDirectory(UserDirectoryInterface):

    def __init__(self, repository: Repository):
        self.repository = repository

    def get_user(self, user_id: int) -> Optional[User]:
        return self.repository.find_one(User, {"id": user_id})

    def find_by_phone_number(self, phone_number: str) -> Optional[User]:
        return self.repository.find_one(User, {"phone_number": phone_number})
