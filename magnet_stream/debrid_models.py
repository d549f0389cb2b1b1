from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class RDTorrentFile(BaseModel):
    id: int
    path: str
    bytes: int = 0
    selected: int = 0


class RDTorrentInfo(BaseModel):
    id: str
    hash: str
    status: str
    filename: str = ""
    bytes: int = 0
    progress: float = 0
    links: List[str] = []

    added: Optional[str] = None
    host: Optional[str] = None
    ended: Optional[str] = None
    files: Optional[List[RDTorrentFile]] = None
    original_bytes: Optional[int] = None
    original_filename: Optional[str] = None
    seeders: Optional[int] = None
    speed: Optional[int] = None


class RDAddMagnetResponse(BaseModel):
    id: str
    uri: Optional[str] = None


class RDUnrestrictedLink(BaseModel):
    id: Optional[str] = None
    filename: str = ""
    mimeType: Optional[str] = None  # guessed by the service from the extension
    filesize: int = 0
    link: str  # Original link
    host: Optional[str] = None
    download: str  # Generated link
    streamable: int = 0


class RDTokenResponse(BaseModel):
    access_token: str
    expires_in: int = 0
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"


class JobStatus(Enum):
    PENDING = "pending"
    CACHED = "cached"
    ERROR = "error"


# Raw service statuses
CACHED_STATUSES = frozenset({"downloaded"})
ERROR_STATUSES = frozenset({"magnet_error", "error", "virus", "dead"})
STALLED_STATUSES = frozenset({"dead", "stalled"})


class RemoteFile(BaseModel):
    id: int
    path: str
    length: int = 0
    selected: bool = False

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class CloudCacheJob(BaseModel):
    """A torrent job on the cloud cache, normalized from the service's view."""
    job_id: str
    info_hash: str
    filename: str = ""
    status: JobStatus = JobStatus.PENDING
    raw_status: str = ""
    progress: float = 0
    seeders: int = 0
    files: List[RemoteFile] = []
    links: List[str] = []

    @classmethod
    def from_info(cls, info: RDTorrentInfo) -> "CloudCacheJob":
        if info.status in CACHED_STATUSES:
            status = JobStatus.CACHED
        elif info.status in ERROR_STATUSES:
            status = JobStatus.ERROR
        else:
            status = JobStatus.PENDING
        return cls(
            job_id=info.id,
            info_hash=info.hash.lower(),
            filename=info.filename,
            status=status,
            raw_status=info.status,
            progress=info.progress,
            seeders=info.seeders or 0,
            files=[
                RemoteFile(id=f.id, path=f.path, length=f.bytes, selected=bool(f.selected))
                for f in info.files or []
            ],
            links=info.links,
        )

    @property
    def selected_ids(self) -> set:
        return {f.id for f in self.files if f.selected}

    @property
    def has_no_seeders(self) -> bool:
        return (
            self.status != JobStatus.CACHED
            and self.raw_status in STALLED_STATUSES
            and self.progress == 0
            and self.seeders == 0
        )

    def link_for(self, file_id: int) -> Optional[str]:
        """Hoster link of a selected file; links follow selected files by id."""
        selected = sorted(self.selected_ids)
        if file_id not in selected:
            return None
        position = selected.index(file_id)
        if position < len(self.links):
            return self.links[position]
        if len(self.links) == 1:
            return self.links[0]
        return None


class InstantFile(BaseModel):
    id: int
    filename: str = ""
    filesize: int = 0


class CacheAvailability(BaseModel):
    """Whether the cloud cache can serve a hash without downloading it."""
    info_hash: str
    available: bool = False
    source: str = "none"  # "job", "instant" or "none"
    job_id: Optional[str] = None
    files: List[InstantFile] = []
    # The service turned the instant check off for this account
    instant_disabled: bool = False
