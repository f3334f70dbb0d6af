"""Idempotent reconciliation of Azure DevOps resources.

Every ``ensure_*`` call reads the live state first and only creates what is
missing. Existing resources are never updated, deleted or recreated; only
their presence is reconciled. The read-then-create pattern assumes a single
writer per target project.
"""

import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from loguru import logger

from ..api.client import AzureDevOpsClient
from ..api.exceptions import APIError
from ..config.config import BranchPolicyConfig
from ..models.group import SecurityGroup
from ..models.project import TargetProject
from ..models.repository import TargetRepository, branch_ref
from ..models.resource import (
    CONFLICT_SENSITIVE_KINDS,
    EnsuredResource,
    ResourceDescriptor,
    ResourceKind,
)
from .exceptions import (
    OperationTimeoutError,
    ResourceExistsError,
    ResourceNotFoundError,
)

GIT_SECURITY_NAMESPACE = '2e9eb7ed-3c0a-47d4-87c1-0ffdd275fd87'

GIT_PERMISSIONS = {
    'Administer': 1,
    'GenericRead': 2,
    'GenericContribute': 4,
    'ForcePush': 8,
    'CreateBranch': 16,
    'CreateTag': 32,
    'ManageNote': 64,
    'PolicyExempt': 128,
    'CreateRepository': 256,
    'DeleteRepository': 512,
    'RenameRepository': 1024,
    'EditPolicies': 2048,
    'RemoveOthersLocks': 4096,
    'ManagePermissions': 8192,
    'PullRequestContribute': 16384,
    'PullRequestBypassPolicy': 32768,
}

MINIMUM_REVIEWERS_POLICY = 'fa4e907d-c16b-4a4c-9dfa-4906e5d171dd'
COMMENT_REQUIREMENTS_POLICY = 'c6a1889d-b943-4856-b76f-9e46bb6b0df2'
WORK_ITEM_LINKING_POLICY = '40e92b44-2fe1-4dd6-b3d8-74a9c21d0c6e'


def permission_bits(names: List[str]) -> int:
    """Combine Git repository permission names into a bit mask."""
    bits = 0
    for name in names:
        if name not in GIT_PERMISSIONS:
            raise ValueError(f'Unknown Git permission: {name}')
        bits |= GIT_PERMISSIONS[name]
    return bits


class ResourceReconciler:
    """Ensures target resources exist without duplicating them."""

    def __init__(
        self,
        client: AzureDevOpsClient,
        operation_timeout: int = 300,
        poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize resource reconciler.

        Args:
            client: Target platform client
            operation_timeout: Seconds to wait for asynchronous operations
            poll_interval: Seconds between operation status polls
            sleep: Sleep function
        """
        self.client = client
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.logger = logger.bind(component='ResourceReconciler')

    def _ensure(
        self,
        descriptor: ResourceDescriptor,
        create: Callable[[], Dict[str, Any]],
        to_resource: Callable[[Dict[str, Any]], EnsuredResource],
        allow_existing: bool = False,
    ) -> EnsuredResource:
        """Create the resource when absent, otherwise return the live one."""
        kind = descriptor.kind.value

        if not descriptor.exists:
            self.logger.info(f'Creating {kind} {descriptor.name!r}')
            resource = to_resource(create())
            return resource.model_copy(update={'created': True})

        if descriptor.kind in CONFLICT_SENSITIVE_KINDS and not allow_existing:
            raise ResourceExistsError(kind, descriptor.name)

        self.logger.info(
            f'{kind} {descriptor.name!r} already exists'
            + ('; reusing it' if allow_existing else '; leaving it unchanged')
        )
        resource = to_resource(descriptor.existing)
        return resource.model_copy(update={'reused': allow_existing})

    def _lookup(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET that maps 404 to None."""
        try:
            return self.client.get(endpoint, params=params, expect=(404,)).data
        except APIError as e:
            if e.is_not_found:
                return None
            raise

    # Projects

    def find_project(self, name: str) -> Optional[TargetProject]:
        data = self._lookup(f'_apis/projects/{quote(name)}')
        return TargetProject(**data) if data else None

    def ensure_project(
        self,
        name: str,
        description: str = '',
        visibility: str = 'private',
        process_template_id: str = 'adcc42ab-9882-485e-a3ed-7678f01f66bc',
        source_control_type: str = 'Git',
        allow_existing: bool = False,
    ) -> EnsuredResource:
        """Ensure a team project exists."""
        existing = self.find_project(name)
        desired = {
            'name': name,
            'description': description,
            'visibility': visibility,
            'capabilities': {
                'versioncontrol': {'sourceControlType': source_control_type},
                'processTemplate': {'templateTypeId': process_template_id},
            },
        }
        descriptor = ResourceDescriptor(
            kind=ResourceKind.PROJECT,
            name=name,
            desired=desired,
            existing=existing.model_dump(by_alias=True) if existing else None,
        )

        def create() -> Dict[str, Any]:
            operation = self.client.post('_apis/projects', data=desired).data
            self._wait_for_operation(operation, f'project {name!r}')
            project = self.find_project(name)
            if project is None:
                raise ResourceNotFoundError(f'Project {name!r} missing after creation')
            return project.model_dump(by_alias=True)

        return self._ensure(
            descriptor,
            create,
            lambda data: EnsuredResource(
                kind=ResourceKind.PROJECT, id=data['id'], name=data['name'], data=data
            ),
            allow_existing,
        )

    def _wait_for_operation(self, operation: Dict[str, Any], what: str) -> None:
        """Poll an operation reference until it reaches a final status."""
        operation_id = (operation or {}).get('id')
        if not operation_id:
            return

        deadline = time.monotonic() + self.operation_timeout
        while True:
            status = self.client.get(f'_apis/operations/{operation_id}').data.get('status')
            if status == 'succeeded':
                return
            if status in ('failed', 'cancelled'):
                raise ResourceNotFoundError(f'Creation of {what} ended with status {status}')
            if time.monotonic() >= deadline:
                raise OperationTimeoutError(
                    f'Creation of {what} did not finish within {self.operation_timeout}s'
                )
            self._sleep(self.poll_interval)

    # Repositories

    def find_repository(self, project: str, name: str) -> Optional[TargetRepository]:
        data = self._lookup(f'{quote(project)}/_apis/git/repositories/{quote(name)}')
        return TargetRepository(**data) if data else None

    def ensure_repository(
        self, project: TargetProject, name: str, allow_existing: bool = False
    ) -> EnsuredResource:
        """Ensure a Git repository exists in the project.

        Raises:
            ResourceExistsError: If it exists and ``allow_existing`` is False
        """
        existing = self.find_repository(project.name, name)
        desired = {'name': name, 'project': {'id': project.id}}
        descriptor = ResourceDescriptor(
            kind=ResourceKind.REPOSITORY,
            name=name,
            desired=desired,
            existing=existing.model_dump(by_alias=True) if existing else None,
        )

        return self._ensure(
            descriptor,
            lambda: self.client.post(
                f'{quote(project.name)}/_apis/git/repositories', data=desired
            ).data,
            lambda data: EnsuredResource(
                kind=ResourceKind.REPOSITORY, id=data['id'], name=data['name'], data=data
            ),
            allow_existing,
        )

    # Branch policies

    def _desired_policies(
        self, repository_id: str, ref_name: str, settings: BranchPolicyConfig
    ) -> Dict[str, Dict[str, Any]]:
        scope = [{'repositoryId': repository_id, 'refName': ref_name, 'matchKind': 'exact'}]
        policies = {}
        if settings.minimum_reviewers > 0:
            policies[MINIMUM_REVIEWERS_POLICY] = {
                'minimumApproverCount': settings.minimum_reviewers,
                'creatorVoteCounts': settings.creator_vote_counts,
                'resetOnSourcePush': settings.reset_on_source_push,
                'allowDownvotes': False,
                'scope': scope,
            }
        if settings.require_comment_resolution:
            policies[COMMENT_REQUIREMENTS_POLICY] = {'scope': scope}
        if settings.require_work_item_link:
            policies[WORK_ITEM_LINKING_POLICY] = {'scope': scope}
        return policies

    def list_branch_policies(
        self, project: TargetProject, repository_id: str, ref_name: str
    ) -> List[Dict[str, Any]]:
        data = self.client.get(
            f'{quote(project.name)}/_apis/git/policy/configurations',
            params={'repositoryId': repository_id, 'refName': ref_name},
        ).data or {}
        return data.get('value', [])

    def ensure_branch_policies(
        self,
        project: TargetProject,
        repository: TargetRepository,
        branch: str,
        settings: BranchPolicyConfig,
    ) -> List[EnsuredResource]:
        """Ensure the configured policy types exist on a branch."""
        ref_name = branch_ref(branch)
        current = self.list_branch_policies(project, repository.id, ref_name)
        by_type = {}
        for policy in current:
            type_id = (policy.get('type') or {}).get('id')
            if type_id and type_id not in by_type:
                by_type[type_id] = policy

        results = []
        for type_id, policy_settings in self._desired_policies(
            repository.id, ref_name, settings
        ).items():
            desired = {
                'isEnabled': True,
                'isBlocking': settings.blocking,
                'type': {'id': type_id},
                'settings': policy_settings,
            }
            descriptor = ResourceDescriptor(
                kind=ResourceKind.BRANCH_POLICY,
                name=f'{type_id}@{ref_name}',
                desired=desired,
                existing=by_type.get(type_id),
            )
            results.append(
                self._ensure(
                    descriptor,
                    lambda desired=desired: self.client.post(
                        f'{quote(project.name)}/_apis/policy/configurations', data=desired
                    ).data,
                    lambda data, name=descriptor.name: EnsuredResource(
                        kind=ResourceKind.BRANCH_POLICY,
                        id=str(data.get('id')),
                        name=name,
                        data=data,
                    ),
                )
            )
        return results

    # Groups and memberships

    def _find_identity(self, filter_value: str) -> Optional[Dict[str, Any]]:
        data = self._lookup(
            self.client.identity_url('_apis/identities'),
            params={
                'searchFilter': 'General',
                'filterValue': filter_value,
                'queryMembership': 'None',
            },
        )
        for identity in (data or {}).get('value', []):
            if identity:
                return identity
        return None

    def find_group(self, project: str, name: str) -> Optional[SecurityGroup]:
        identity = self._find_identity(f'[{project}]\\{name}')
        return SecurityGroup(**identity) if identity else None

    def ensure_group(
        self, project: TargetProject, name: str, description: str = ''
    ) -> EnsuredResource:
        """Ensure a project-scoped security group exists."""
        existing = self.find_group(project.name, name)
        desired = {'displayName': name, 'description': description}
        descriptor = ResourceDescriptor(
            kind=ResourceKind.GROUP,
            name=name,
            desired=desired,
            existing=existing.model_dump(by_alias=True) if existing else None,
        )

        def create() -> Dict[str, Any]:
            scope = self.client.get(
                self.client.identity_url(f'_apis/graph/descriptors/{project.id}'),
                params={'api-version': self.client.preview_version()},
            ).data['value']
            created = self.client.post(
                self.client.identity_url('_apis/graph/groups'),
                data=desired,
                params={
                    'scopeDescriptor': scope,
                    'api-version': self.client.preview_version(),
                },
            ).data
            group = self.find_group(project.name, name)
            if group is None:
                raise ResourceNotFoundError(
                    f'Group {name!r} not visible as an identity after creation '
                    f'(graph descriptor {created.get("descriptor")})'
                )
            return group.model_dump(by_alias=True)

        return self._ensure(
            descriptor,
            create,
            lambda data: EnsuredResource(
                kind=ResourceKind.GROUP, id=data['id'], name=name, data=data
            ),
        )

    def ensure_membership(self, group: SecurityGroup, member: str) -> EnsuredResource:
        """Ensure ``member`` (a principal name) belongs to ``group``.

        A 409 answer to the create call means the membership already exists.
        """
        identity = self._find_identity(member)
        if identity is None or not identity.get('subjectDescriptor'):
            raise ResourceNotFoundError(f'Identity {member!r} not found')
        if not group.subject_descriptor:
            raise ResourceNotFoundError(f'Group {group.display_name!r} has no graph descriptor')

        endpoint = self.client.identity_url(
            f'_apis/graph/memberships/{identity["subjectDescriptor"]}/{group.subject_descriptor}'
        )
        params = {'api-version': self.client.preview_version()}
        name = f'{member} in {group.display_name}'

        descriptor = ResourceDescriptor(
            kind=ResourceKind.MEMBERSHIP,
            name=name,
            desired={'member': member, 'group': group.subject_descriptor},
            existing=self._lookup(endpoint, params=params),
        )

        def create() -> Dict[str, Any]:
            try:
                return self.client.put(endpoint, params=params, expect=(409,)).data or {}
            except APIError as e:
                if e.is_conflict:
                    self.logger.info(f'Membership {name!r} already present (409)')
                    return {}
                raise

        return self._ensure(
            descriptor,
            create,
            lambda data: EnsuredResource(
                kind=ResourceKind.MEMBERSHIP,
                id=f'{identity["subjectDescriptor"]}/{group.subject_descriptor}',
                name=name,
                data=data or {},
            ),
        )

    # Wikis and work item templates

    def ensure_wiki(self, project: TargetProject, name: Optional[str] = None) -> EnsuredResource:
        """Ensure the project wiki exists."""
        name = name or f'{project.name}.wiki'
        desired = {'name': name, 'projectId': project.id, 'type': 'projectWiki'}
        descriptor = ResourceDescriptor(
            kind=ResourceKind.WIKI,
            name=name,
            desired=desired,
            existing=self._lookup(f'{quote(project.name)}/_apis/wiki/wikis/{quote(name)}'),
        )
        return self._ensure(
            descriptor,
            lambda: self.client.post('_apis/wiki/wikis', data=desired).data,
            lambda data: EnsuredResource(
                kind=ResourceKind.WIKI, id=data['id'], name=data['name'], data=data
            ),
        )

    def ensure_work_item_template(
        self,
        project: TargetProject,
        name: str,
        work_item_type: str,
        description: str = '',
        fields: Optional[Dict[str, Any]] = None,
        team: Optional[str] = None,
    ) -> EnsuredResource:
        """Ensure a team work item template with this name exists."""
        team = team or project.default_team_name
        endpoint = f'{quote(project.name)}/{quote(team)}/_apis/wit/templates'
        listing = self.client.get(
            endpoint, params={'workitemtypename': work_item_type}
        ).data or {}
        existing = next(
            (t for t in listing.get('value', []) if t.get('name') == name), None
        )
        desired = {
            'name': name,
            'description': description,
            'workItemTypeName': work_item_type,
            'fields': fields or {},
        }
        descriptor = ResourceDescriptor(
            kind=ResourceKind.WORK_ITEM_TEMPLATE,
            name=name,
            desired=desired,
            existing=existing,
        )
        return self._ensure(
            descriptor,
            lambda: self.client.post(endpoint, data=desired).data,
            lambda data: EnsuredResource(
                kind=ResourceKind.WORK_ITEM_TEMPLATE, id=data['id'], name=data['name'], data=data
            ),
        )

    # Security

    def ensure_deny_restriction(
        self,
        project: TargetProject,
        repository: TargetRepository,
        group: SecurityGroup,
        deny_bits: int,
    ) -> EnsuredResource:
        """Deny ``deny_bits`` on a repository for a group.

        The current entry is read best-effort (a failed read is only logged)
        and the write merges, so bits outside ``deny_bits`` are left alone.
        """
        token = f'repoV2/{project.id}/{repository.id}'
        current = None
        try:
            acl = self.client.get(
                f'_apis/accesscontrollists/{GIT_SECURITY_NAMESPACE}',
                params={'token': token, 'descriptors': group.descriptor},
            ).data or {}
            for entry in acl.get('value', []):
                current = entry.get('acesDictionary', {}).get(group.descriptor)
                if current:
                    break
        except APIError as e:
            self.logger.warning(
                f'Could not read current permissions of {group.display_name!r} on '
                f'{repository.name!r}; applying restriction anyway: {e}'
            )

        already_denied = bool(current) and (current.get('deny', 0) & deny_bits) == deny_bits
        if already_denied:
            self.logger.info(
                f'{group.display_name!r} already denied {deny_bits} on {repository.name!r}'
            )

        self.client.post(
            f'_apis/accesscontrolentries/{GIT_SECURITY_NAMESPACE}',
            data={
                'token': token,
                'merge': True,
                'accessControlEntries': [
                    {
                        'descriptor': group.descriptor,
                        'allow': 0,
                        'deny': deny_bits,
                        'extendedInfo': {},
                    }
                ],
            },
        )
        return EnsuredResource(
            kind=ResourceKind.ACCESS_CONTROL,
            id=token,
            name=group.display_name,
            data={'deny': deny_bits, 'previous': current},
            created=not already_denied,
        )
