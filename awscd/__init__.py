"""
awscd: idempotent CodeDeploy infrastructure provisioning.

Plans and applies the roles, artifact bucket, scaling infrastructure,
CodeDeploy application, deployment groups and branch pipelines a project
needs, adopting whatever already exists under the project's deterministic
names, and tears them down again in reverse dependency order.
"""

__version__ = "0.1.0"
