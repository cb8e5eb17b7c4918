from dataclasses import dataclass

# Appended to the source key to name its encrypted counterpart. Objects whose
# key already ends with it are never encrypted again, so it must not change.
ENCRYPTED_SUFFIX = ".encrypted"


@dataclass(frozen=True)
class ObjectRef:
    """A stored object: bucket name plus object key."""

    bucket: str
    key: str

    @property
    def is_encrypted(self) -> bool:
        return self.key.endswith(ENCRYPTED_SUFFIX)

    def encrypted(self) -> "ObjectRef":
        """Reference of the encrypted copy, in the same bucket."""
        return ObjectRef(self.bucket, self.key + ENCRYPTED_SUFFIX)

    def __str__(self) -> str:
        return f"s3://{self.bucket}/{self.key}"
