"""Run an ordered list of one-shot Jobs to completion.

The orchestrator is stateless. Every call walks the job list from the start,
skips the jobs the owner reports as done, starts the first missing Job and
then polls it until K8s reports success. The owner records the success in its
status, which makes the job skip on the next call.

"""

import copy
import logging
from typing import Any, Callable, List, Tuple

from pydantic import BaseModel, ConfigDict
from square.dtypes import K8sConfig

import temporal_operator.k8s
from temporal_operator.builder import Builder
from temporal_operator.models import ResourceIdentity
from temporal_operator.registry import KindRegistry

# Seconds to wait before polling an unfinished Job again.
JOB_REQUEUE = 10.0

# Convenience.
logit = logging.getLogger("app")


class Job(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    command: List[str]

    # Return `True` if the job already ran for this owner.
    skip: Callable[[Any], bool]

    # Record the success in the owner. Returns `True` on error.
    report_success: Callable[[Any], bool]


JobFactory = Callable[[Any, str, List[str]], Builder]


class JobsReconciler:
    def __init__(self, k8scfg: K8sConfig, registry: KindRegistry):
        self.k8scfg = k8scfg
        self.registry = registry

    async def create_job(self, builder: Builder, identity: ResourceIdentity) -> bool:
        obj = self.registry.empty(identity)
        obj["metadata"].update(copy.deepcopy(builder.build().get("metadata", {})))
        if builder.update(obj):
            logit.error("cannot build job", {"job": identity.name})
            return True

        url = self.registry.collection_url(identity.gvk, identity.namespace)
        _, _, err = await temporal_operator.k8s.post(self.k8scfg, url, obj)
        return err

    async def run_jobs(
        self, owner: Any, factory: JobFactory, jobs: List[Job]
    ) -> Tuple[float, bool]:
        """Return `(requeue_after, err)`.

        A positive `requeue_after` means a Job is still running.

        """
        for job in jobs:
            if job.skip(owner):
                continue

            logit.info("checking for job", {"job": job.name})
            builder = factory(owner, job.name, job.command)
            identity = ResourceIdentity.from_manifest(builder.build())

            _, err = self.registry.lookup(identity.gvk)
            if err:
                return 0.0, True

            url = self.registry.resource_url(identity)
            live, code, err = await temporal_operator.k8s.get(self.k8scfg, url)
            if err:
                return 0.0, True

            if code == 404:
                if await self.create_job(builder, identity):
                    return 0.0, True
                logit.info("job created", {"job": job.name})
                return JOB_REQUEUE, False

            if live.get("status", {}).get("succeeded", 0) != 1:
                logit.info("waiting for job to complete", {"job": job.name})
                return JOB_REQUEUE, False

            logit.info("job is finished", {"job": job.name})
            if job.report_success(owner):
                logit.error("cannot report job success", {"job": job.name})
                return 0.0, True

        return 0.0, False
