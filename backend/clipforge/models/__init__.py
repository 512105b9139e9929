# Models module
from clipforge.models.job import Job, JobStatus
from clipforge.models.transcript import Transcript, Segment
from clipforge.models.connection import PlatformConnection, Platform, AuthStatus
from clipforge.models.clip import Clip, ClipStatus, ClipUpload, UploadStatus
from clipforge.models.quota import QuotaRecord, UNLIMITED

__all__ = [
    "Job",
    "JobStatus",
    "Transcript",
    "Segment",
    "PlatformConnection",
    "Platform",
    "AuthStatus",
    "Clip",
    "ClipStatus",
    "ClipUpload",
    "UploadStatus",
    "QuotaRecord",
    "UNLIMITED",
]
