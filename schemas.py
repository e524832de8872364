"""
Database Schemas for the Book Library

Each Pydantic model describes the documents of one MongoDB collection:
User -> "users", Book -> "books", BorrowedBook -> "BorrowedBooksInfo".
Clients may send extra fields (cover image, description, borrow dates...);
they are kept as-is.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class User(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: Optional[str] = Field(None, description="Unique email address")
    name: Optional[str] = Field(None, description="Display name")
    photoURL: Optional[str] = None
    role: Role = Field(Role.USER, description="Role: user or admin")


class Book(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    category: Optional[str] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    quantity: Optional[int] = Field(None, ge=0)
    authorName: Optional[str] = None
    authorEmail: Optional[str] = Field(None, description="Email of the user who added the book")


class UpdateBookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    category: Optional[str] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    quantity: Optional[int] = Field(None, ge=0)
    authorName: Optional[str] = None


class BorrowedBook(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: Optional[str] = None
    bookId: Optional[str] = Field(None, description="String form of the book _id")
    returnDate: Optional[str] = Field(None, description="ISO date the user plans to return the book")


class UpdateUserPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    photoURL: Optional[str] = None
    role: Optional[Role] = None
