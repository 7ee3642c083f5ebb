from .authorized_key import AuthorizedKeyOperation
from .base import Operation
from .exec import ExecOperation
from .file import FileOperation
from .package import PackageOperation
from .remote import RemoteFileOperation
from .service import ServiceOperation
from .user import UserOperation

OPERATION_REGISTRY = {
    "user": UserOperation,
    "package": PackageOperation,
    "file": FileOperation,
    "remote_file": RemoteFileOperation,
    "service": ServiceOperation,
    "authorized_key": AuthorizedKeyOperation,
    "exec": ExecOperation,
}

__all__ = [
    "Operation",
    "UserOperation",
    "PackageOperation",
    "FileOperation",
    "RemoteFileOperation",
    "ServiceOperation",
    "AuthorizedKeyOperation",
    "ExecOperation",
    "OPERATION_REGISTRY",
]
