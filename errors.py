# errors.py


class QueueError(Exception):
    """Base error for the publishing queue"""


class ValidationError(QueueError):
    """Rejected enqueue input (missing content or malformed publish_at)"""


class RemoteAPIError(QueueError):
    """Non-2xx answer from the Graph API"""

    def __init__(self, status_code, message, code=None, subcode=None):
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.message = message
        super().__init__(self.__str__())

    def __str__(self):
        parts = [f"HTTP {self.status_code}"]
        if self.code is not None:
            parts.append(f"code={self.code}")
        if self.subcode is not None:
            parts.append(f"subcode={self.subcode}")
        return f"{' '.join(parts)}: {self.message}"


class PublishError(QueueError):
    """The publish workflow could not complete"""


class ContainerError(PublishError):
    """The remote side reported the media container as failed"""


class PollTimeout(PublishError):
    """The container never reached a terminal status within the poll budget"""


class ConfigError(QueueError):
    """Settings are missing or unusable for the requested operation"""
