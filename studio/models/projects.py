"""
Project Data Models

This module contains the project record that groups a user's generations
and assets.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from studio.models.shared import FirestoreBaseModel


class BaseProject(BaseModel):
    """Base project model shared between Firestore and API."""

    id: str = Field(..., description="Unique project identifier")
    user_id: str = Field(..., description="Owner user ID")
    title: str = Field(..., min_length=1, max_length=200, description="Project title")
    description: Optional[str] = Field(None, description="Project description")
    created_at: datetime = Field(..., description="Project creation timestamp")


class Project(BaseProject, FirestoreBaseModel):
    """Project document model for projects collection."""

    pass
