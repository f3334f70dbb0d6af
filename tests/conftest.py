"""Shared fixtures: in-memory GitLab and Azure DevOps stand-ins."""

import itertools
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import pytest

from gitlab_ado_migrate.api.client import APIResponse
from gitlab_ado_migrate.api.exceptions import APIError, Side
from gitlab_ado_migrate.config.config import BranchPolicyConfig, GitConfig, MigrationConfig
from gitlab_ado_migrate.git.mirror import MirrorResult
from gitlab_ado_migrate.migration.orchestrator import MigrationOrchestrator
from gitlab_ado_migrate.migration.reconciler import ResourceReconciler
from gitlab_ado_migrate.migration.state import MigrationStore


class FakeAzureDevOpsClient:
    """Routes reconciler calls to in-memory Azure DevOps state."""

    IDENTITY_BASE = 'https://vssps.example.test/org'

    def __init__(self):
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.repositories: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.policies: List[Dict[str, Any]] = []
        self.identities: Dict[str, Dict[str, Any]] = {}
        self.memberships = set()
        self.wikis: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.templates: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.acls: Dict[str, Dict[str, Dict[str, int]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self._ids = itertools.count(1)
        self._routes = [
            (r'GET _apis/projects/([^/]+)', self._get_project),
            (r'POST _apis/projects', self._create_project),
            (r'GET _apis/operations/([^/]+)', self._get_operation),
            (r'GET ([^/]+)/_apis/git/repositories/([^/]+)', self._get_repository),
            (r'POST ([^/]+)/_apis/git/repositories', self._create_repository),
            (r'GET ([^/]+)/_apis/git/policy/configurations', self._list_policies),
            (r'POST ([^/]+)/_apis/policy/configurations', self._create_policy),
            (r'GET _apis/identities', self._search_identities),
            (r'GET _apis/graph/descriptors/([^/]+)', self._get_descriptor),
            (r'POST _apis/graph/groups', self._create_group),
            (r'GET _apis/graph/memberships/([^/]+)/([^/]+)', self._get_membership),
            (r'PUT _apis/graph/memberships/([^/]+)/([^/]+)', self._add_membership),
            (r'GET ([^/]+)/_apis/wiki/wikis/([^/]+)', self._get_wiki),
            (r'POST _apis/wiki/wikis', self._create_wiki),
            (r'GET ([^/]+)/([^/]+)/_apis/wit/templates', self._list_templates),
            (r'POST ([^/]+)/([^/]+)/_apis/wit/templates', self._create_template),
            (r'GET _apis/accesscontrollists/([^/]+)', self._get_acl),
            (r'POST _apis/accesscontrolentries/([^/]+)', self._write_ace),
        ]

    # Client surface used by the reconciler and orchestrator

    def identity_url(self, endpoint: str) -> str:
        return f'{self.IDENTITY_BASE}/{endpoint.lstrip("/")}'

    def preview_version(self, revision: int = 1) -> str:
        return f'7.1-preview.{revision}'

    def push_url(self, remote_url: str) -> str:
        return remote_url.replace('https://', 'https://pat:ado-secret@')

    def get(self, endpoint, params=None, **kwargs):
        return self._dispatch('GET', endpoint, None, params)

    def post(self, endpoint, data=None, params=None, **kwargs):
        return self._dispatch('POST', endpoint, data, params)

    def put(self, endpoint, data=None, params=None, **kwargs):
        return self._dispatch('PUT', endpoint, data, params)

    # Seeding helpers

    def add_project(self, name: str) -> Dict[str, Any]:
        project_id = f'project-{next(self._ids)}'
        self.projects[name] = {
            'id': project_id,
            'name': name,
            'state': 'wellFormed',
            'visibility': 'private',
            'defaultTeam': {'id': f'team-{project_id}', 'name': f'{name} Team'},
        }
        return self.projects[name]

    def add_repository(
        self, project: str, name: str, default_branch: Optional[str] = None
    ) -> Dict[str, Any]:
        repo_id = f'repo-{next(self._ids)}'
        self.repositories[(project, name)] = {
            'id': repo_id,
            'name': name,
            'project': {'id': self.projects[project]['id'], 'name': project},
            'remoteUrl': f'https://dev.example.test/org/{project}/_git/{name}',
            'defaultBranch': default_branch,
        }
        return self.repositories[(project, name)]

    def add_group(self, project: str, name: str) -> Dict[str, Any]:
        n = next(self._ids)
        identity = {
            'id': f'group-{n}',
            'descriptor': f'Microsoft.TeamFoundation.Identity;S-1-9-{n}',
            'subjectDescriptor': f'vssgp.{n}',
            'providerDisplayName': f'[{project}]\\{name}',
        }
        self.identities[f'[{project}]\\{name}'] = identity
        return identity

    def add_user(self, principal: str) -> Dict[str, Any]:
        n = next(self._ids)
        identity = {
            'id': f'user-{n}',
            'descriptor': f'Microsoft.IdentityModel.Claims.ClaimsIdentity;{principal}',
            'subjectDescriptor': f'aad.{n}',
            'providerDisplayName': principal,
        }
        self.identities[principal] = identity
        return identity

    def count_calls(self, method: str, fragment: str) -> int:
        return sum(1 for m, path in self.calls if m == method and fragment in path)

    # Dispatch

    def _dispatch(self, method, endpoint, body, params):
        if endpoint.startswith(self.IDENTITY_BASE):
            endpoint = endpoint[len(self.IDENTITY_BASE):]
        path = unquote(endpoint.lstrip('/'))
        params = params or {}
        self.calls.append((method, path))

        for (fail_method, fragment), error in self.failures.items():
            if fail_method == method and fragment in path:
                raise error

        for pattern, handler in self._routes:
            match = re.fullmatch(pattern, f'{method} {path}')
            if match:
                data = handler(*match.groups(), body=body, params=params)
                return APIResponse(status_code=200, data=data, headers={}, success=True)
        raise AssertionError(f'Unexpected call: {method} {path}')

    @staticmethod
    def _error(status: int, path: str) -> APIError:
        return APIError(f'HTTP {status}', side=Side.TARGET, status_code=status, endpoint=path)

    def _get_project(self, name, body, params):
        if name not in self.projects:
            raise self._error(404, f'_apis/projects/{name}')
        return self.projects[name]

    def _create_project(self, body, params):
        project = self.add_project(body['name'])
        project['description'] = body.get('description')
        return {'id': f'op-{project["id"]}', 'status': 'queued'}

    def _get_operation(self, operation_id, body, params):
        return {'id': operation_id, 'status': 'succeeded'}

    def _get_repository(self, project, name, body, params):
        if (project, name) not in self.repositories:
            raise self._error(404, f'{project}/_apis/git/repositories/{name}')
        return self.repositories[(project, name)]

    def _create_repository(self, project, body, params):
        return self.add_repository(project, body['name'])

    def _list_policies(self, project, body, params):
        matching = [
            p
            for p in self.policies
            if any(
                s['repositoryId'] == params.get('repositoryId')
                and s['refName'] == params.get('refName')
                for s in p['settings']['scope']
            )
        ]
        return {'count': len(matching), 'value': matching}

    def _create_policy(self, project, body, params):
        policy = dict(body, id=next(self._ids))
        self.policies.append(policy)
        return policy

    def _search_identities(self, body, params):
        identity = self.identities.get(params.get('filterValue'))
        return {'count': 1 if identity else 0, 'value': [identity] if identity else []}

    def _get_descriptor(self, project_id, body, params):
        return {'value': f'scp.{project_id}'}

    def _create_group(self, body, params):
        project_id = params['scopeDescriptor'][len('scp.'):]
        project = next(n for n, p in self.projects.items() if p['id'] == project_id)
        identity = self.add_group(project, body['displayName'])
        return {'descriptor': identity['subjectDescriptor'], 'displayName': body['displayName']}

    def _get_membership(self, member, container, body, params):
        if (member, container) not in self.memberships:
            raise self._error(404, f'_apis/graph/memberships/{member}/{container}')
        return {'memberDescriptor': member, 'containerDescriptor': container}

    def _add_membership(self, member, container, body, params):
        if (member, container) in self.memberships:
            raise self._error(409, f'_apis/graph/memberships/{member}/{container}')
        self.memberships.add((member, container))
        return {'memberDescriptor': member, 'containerDescriptor': container}

    def _get_wiki(self, project, name, body, params):
        if (project, name) not in self.wikis:
            raise self._error(404, f'{project}/_apis/wiki/wikis/{name}')
        return self.wikis[(project, name)]

    def _create_wiki(self, body, params):
        project = next(n for n, p in self.projects.items() if p['id'] == body['projectId'])
        wiki = {'id': f'wiki-{next(self._ids)}', 'name': body['name'], 'type': body['type']}
        self.wikis[(project, body['name'])] = wiki
        return wiki

    def _list_templates(self, project, team, body, params):
        return {'value': list(self.templates.get((project, team), []))}

    def _create_template(self, project, team, body, params):
        template = dict(body, id=f'template-{next(self._ids)}')
        self.templates.setdefault((project, team), []).append(template)
        return template

    def _get_acl(self, namespace, body, params):
        aces = self.acls.get(params['token'], {})
        descriptor = params.get('descriptors')
        entry = {descriptor: aces[descriptor]} if descriptor in aces else {}
        return {'count': 1, 'value': [{'token': params['token'], 'acesDictionary': entry}]}

    def _write_ace(self, namespace, body, params):
        aces = self.acls.setdefault(body['token'], {})
        for ace in body['accessControlEntries']:
            current = aces.get(ace['descriptor'], {'allow': 0, 'deny': 0})
            if body.get('merge'):
                current = {
                    'allow': current['allow'] | ace['allow'],
                    'deny': current['deny'] | ace['deny'],
                }
            else:
                current = {'allow': ace['allow'], 'deny': ace['deny']}
            aces[ace['descriptor']] = current
        return {'count': len(body['accessControlEntries']), 'value': body['accessControlEntries']}


class FakeGitLabClient:
    """Read-only project metadata keyed by full path."""

    def __init__(self):
        self.projects: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(100)

    def add_project(self, path: str, **overrides) -> Dict[str, Any]:
        project = {
            'id': next(self._ids),
            'name': path.rsplit('/', 1)[-1],
            'path': path.rsplit('/', 1)[-1],
            'path_with_namespace': path,
            'visibility': 'private',
            'default_branch': 'main',
            'http_url_to_repo': f'https://gitlab.example.test/{path}.git',
            'lfs_enabled': False,
            'statistics': {'repository_size': 2048, 'lfs_objects_size': 0},
        }
        project.update(overrides)
        self.projects[path] = project
        return project

    def get_project(self, path: str) -> Dict[str, Any]:
        if path not in self.projects:
            raise APIError(
                'HTTP 404', side=Side.SOURCE, status_code=404, endpoint=f'/projects/{path}'
            )
        return self.projects[path]

    def clone_url(self, project: Dict[str, Any]) -> str:
        return project['http_url_to_repo'].replace('https://', 'https://oauth2:gl-secret@')


class FakeMirror:
    """Records mirror requests; fails for source URLs containing ``fail_on``."""

    def __init__(self):
        self.calls: List[Tuple[str, str, bool]] = []
        self.fail_on: Optional[str] = None

    def mirror(self, source_url: str, target_url: str, lfs: bool = False) -> MirrorResult:
        self.calls.append((source_url, target_url, lfs))
        if self.fail_on and self.fail_on in source_url:
            return MirrorResult(success=False, error='remote rejected push')
        return MirrorResult(success=True, lfs_mirrored=lfs)


@pytest.fixture
def fake_ado():
    return FakeAzureDevOpsClient()


@pytest.fixture
def fake_gitlab():
    return FakeGitLabClient()


@pytest.fixture
def fake_mirror():
    return FakeMirror()


@pytest.fixture
def store(tmp_path):
    return MigrationStore(str(tmp_path / 'state'))


@pytest.fixture
def reconciler(fake_ado):
    return ResourceReconciler(fake_ado, poll_interval=0, sleep=lambda _: None)


@pytest.fixture
def orchestrator(fake_gitlab, reconciler, fake_mirror, store):
    return MigrationOrchestrator(
        fake_gitlab,
        reconciler,
        fake_mirror,
        store,
        migration_config=MigrationConfig(state_dir=str(store.state_dir)),
        branch_policies=BranchPolicyConfig(),
    )


@pytest.fixture
def git_config(tmp_path):
    return GitConfig(temp_dir=str(tmp_path / 'git'), timeout=60)
