"""
Pydantic schemas for WhatsApp Cloud API webhook payloads.

Only the parts of the payload the service reads are modelled; everything
else is ignored.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TextBody(_Lenient):
    body: str = ""


class InboundMessage(_Lenient):
    id: Optional[str] = None
    # Sender's phone number, digits only ("from" in the payload)
    sender: Optional[str] = Field(None, alias="from")
    type: Optional[str] = None
    text: Optional[TextBody] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ChangeValue(_Lenient):
    messages: List[InboundMessage] = []


class Change(_Lenient):
    field: Optional[str] = None
    value: ChangeValue = ChangeValue()


class Entry(_Lenient):
    id: Optional[str] = None
    changes: List[Change] = []


class WebhookPayload(_Lenient):
    object: Optional[str] = None
    entry: List[Entry] = []

    def messages(self) -> List[InboundMessage]:
        return [
            message
            for entry in self.entry
            for change in entry.changes
            for message in change.value.messages
        ]


class MessageResult(BaseModel):
    message_id: Optional[str] = None
    status: str


class WebhookResponse(BaseModel):
    success: bool = True
    results: List[MessageResult] = []
