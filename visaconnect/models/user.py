from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    profile_photo_url: Optional[str]
    occupation: Optional[str]
    visa_type: Optional[str]
