"""The S3 bucket holding deployment and pipeline artifacts."""

from typing import List, Optional

from botocore.exceptions import ClientError

from ..errors import TransientError
from ..models import DesiredState, ObservedState, ResourceKind
from .base import Bound, ResourceHandler, error_code

# delete_objects accepts at most 1000 keys per call
_DELETE_BATCH = 1000


class ArtifactBucketHandler(ResourceHandler):
    """Artifact bucket.

    ``BucketAlreadyOwnedByYou`` on create is adoption; ``BucketAlreadyExists``
    means another account owns the name and the create fails.
    """

    kind = ResourceKind.ARTIFACT_BUCKET
    service_name = "s3"

    def fetch(self, name: str) -> Optional[ObservedState]:
        if self._call("head_bucket", missing_ok=True, label=name, Bucket=name) is None:
            return None

        location = self._call("get_bucket_location", label=name, Bucket=name)
        region = location.get("LocationConstraint") or "us-east-1"
        return self._observed(name, name, tags=self._bucket_tags(name), region=region)

    def _bucket_tags(self, name: str) -> dict:
        try:
            resp = self.client.get_bucket_tagging(Bucket=name)
        except ClientError as exc:
            if error_code(exc) == "NoSuchTagSet":
                return {}
            raise TransientError("s3:get_bucket_tagging", str(exc), code=error_code(exc)) from exc
        return self._safe_tags(resp.get("TagSet"))

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        kwargs = {"Bucket": desired.name}
        if self.ctx.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.ctx.region}
        self._call("create_bucket", label=desired.name, **kwargs)
        self._call(
            "put_bucket_tagging",
            label=desired.name,
            Bucket=desired.name,
            Tagging={"TagSet": self._tag_list(self._project_tags())},
        )
        self._log_write("create", desired.name, region=self.ctx.region)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        """Empty every object version and delete marker, then the bucket."""
        name = observed.name
        pending = []
        for page_key in ("Versions", "DeleteMarkers"):
            for item in self._paginate("list_object_versions", page_key, Bucket=name):
                pending.append({"Key": item["Key"], "VersionId": item["VersionId"]})

        for start in range(0, len(pending), _DELETE_BATCH):
            batch = pending[start : start + _DELETE_BATCH]
            self._call(
                "delete_objects",
                label=name,
                Bucket=name,
                Delete={"Objects": batch, "Quiet": True},
            )

        self._call("delete_bucket", missing_ok=True, label=name, Bucket=name)
        self._log_write("delete", name, objects_removed=len(pending))

    def scan(self, prefix: str) -> List[ObservedState]:
        resp = self._call("list_buckets")
        return [
            self._observed(bucket["Name"], bucket["Name"])
            for bucket in resp.get("Buckets", [])
            if bucket["Name"].startswith(prefix)
        ]
