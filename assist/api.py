from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from .entry_parser import EntryDraft, EntryDraftParser

router = APIRouter(tags=["Assist"])


class ParseEntryRequest(BaseModel):
    text: str


def get_entry_parser(request: Request) -> EntryDraftParser:
    return request.app.state.container.parser


@router.post("/assist/parse-entry", response_model=EntryDraft)
def parse_entry(request: ParseEntryRequest, parser: EntryDraftParser = Depends(get_entry_parser)) -> EntryDraft:
    try:
        return parser.parse(request.text)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
