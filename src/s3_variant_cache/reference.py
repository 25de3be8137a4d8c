class ObjectReference:
    """Identifies one remote object.

    Region, endpoint and credentials are optional per-object overrides of
    the configured defaults. The length is unknown (None) until it is
    discovered, and may then be set once.
    """

    __slots__ = (
        "bucket",
        "key",
        "region",
        "endpoint",
        "access_key_id",
        "secret_access_key",
        "_length",
    )

    def __init__(
        self,
        bucket,
        key,
        region=None,
        endpoint=None,
        access_key_id=None,
        secret_access_key=None,
        length=None,
    ):
        self.bucket = bucket
        self.key = key
        self.region = region
        self.endpoint = endpoint
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self._length = length

    @property
    def length(self):
        return self._length

    @length.setter
    def length(self, value):
        if value is None:
            raise ValueError(f"length of {self.uri} cannot be unset")
        if self._length is not None and self._length != value:
            raise ValueError(f"length of {self.uri} is already {self._length}")
        if value < 0:
            raise ValueError(f"invalid length: {value}")
        self._length = value

    @property
    def uri(self):
        if self.endpoint:
            return f"s3://{self.endpoint}/{self.bucket}/{self.key}"
        return f"s3://{self.bucket}/{self.key}"

    def __eq__(self, other):
        if not isinstance(other, ObjectReference):
            return NotImplemented
        return (
            self.bucket,
            self.key,
            self.region,
            self.endpoint,
            self.access_key_id,
            self.secret_access_key,
        ) == (
            other.bucket,
            other.key,
            other.region,
            other.endpoint,
            other.access_key_id,
            other.secret_access_key,
        )

    def __hash__(self):
        return hash((self.bucket, self.key, self.endpoint))

    def __repr__(self):
        access_key = "******" if self.access_key_id else None
        secret = "******" if self.secret_access_key else None
        return (
            f"<ObjectReference endpoint={self.endpoint!r} region={self.region!r} "
            f"access_key_id={access_key!r} secret_access_key={secret!r} "
            f"bucket={self.bucket!r} key={self.key!r}>"
        )
