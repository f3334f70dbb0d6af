"""Configuration management for the GitLab to Azure DevOps migration tool."""

from typing import Optional, Dict, Any, List
from pathlib import Path
from urllib.parse import urlparse
import os

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
import yaml
from dotenv import load_dotenv


CLOUD_HOST_SUFFIXES = ('dev.azure.com', 'visualstudio.com')


class SourceConfig(BaseModel):
    """Configuration for the source GitLab instance."""

    url: str = Field(..., description='GitLab instance URL')
    token: str = Field(..., description='Personal access token')
    api_version: str = Field(default='v4', description='GitLab API version')
    timeout: int = Field(default=30, description='Request timeout in seconds')
    rate_limit_per_second: Optional[float] = Field(
        default=10.0, description='API requests per second limit'
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Validate GitLab URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('token')
    @classmethod
    def validate_token(cls, v):
        if not v or not v.strip():
            raise ValueError('A GitLab token must be provided')
        return v

    @field_validator('rate_limit_per_second')
    @classmethod
    def validate_rate_limit(cls, v):
        """Validate rate limit is positive."""
        if v is not None and v <= 0:
            raise ValueError('Rate limit must be positive')
        return v


class TargetConfig(BaseModel):
    """Configuration for the target Azure DevOps organization or collection."""

    url: str = Field(
        ..., description='Organization URL (https://dev.azure.com/org) or collection URL'
    )
    pat: str = Field(..., description='Personal access token')
    api_version: Optional[str] = Field(
        default=None,
        description='REST api-version; resolved once per session when not set',
    )
    timeout: int = Field(default=30, description='Request timeout in seconds')
    rate_limit_per_second: Optional[float] = Field(
        default=10.0, description='API requests per second limit'
    )
    verify_ssl: bool = Field(default=True, description='Verify TLS certificates')
    ca_bundle: Optional[str] = Field(
        default=None, description='Custom CA bundle used for certificate validation'
    )
    allow_insecure_fallback: bool = Field(
        default=False,
        description='Retry TLS failures against internal hosts through curl --insecure',
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('pat')
    @classmethod
    def validate_pat(cls, v):
        if not v or not v.strip():
            raise ValueError('An Azure DevOps personal access token must be provided')
        return v

    @field_validator('rate_limit_per_second')
    @classmethod
    def validate_rate_limit(cls, v):
        if v is not None and v <= 0:
            raise ValueError('Rate limit must be positive')
        return v

    @property
    def host(self) -> str:
        return (urlparse(self.url).hostname or '').lower()

    @property
    def is_internal_host(self) -> bool:
        """True for self-hosted Azure DevOps Server collections."""
        return not self.host.endswith(CLOUD_HOST_SUFFIXES)


class RetryConfig(BaseModel):
    """Retry and backoff settings for platform requests."""

    max_attempts: int = Field(default=4, description='Maximum attempts per request')
    base_delay: float = Field(default=1.0, description='Initial backoff in seconds')
    jitter_ratio: float = Field(
        default=0.2, description='Maximum jitter as a fraction of the backoff'
    )

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v

    @field_validator('base_delay', 'jitter_ratio')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError('Backoff settings must not be negative')
        return v


class BranchPolicyConfig(BaseModel):
    """Branch policies applied to the default branch of migrated repositories."""

    enabled: bool = Field(default=True, description='Reconcile branch policies')
    minimum_reviewers: int = Field(default=1, description='Minimum approver count')
    creator_vote_counts: bool = Field(default=False)
    reset_on_source_push: bool = Field(default=True)
    require_comment_resolution: bool = Field(default=True)
    require_work_item_link: bool = Field(default=False)
    blocking: bool = Field(default=True, description='Policies block completion')

    @field_validator('minimum_reviewers')
    @classmethod
    def validate_reviewers(cls, v):
        if v < 0:
            raise ValueError('minimum_reviewers must not be negative')
        return v


class MigrationConfig(BaseModel):
    """Migration-specific configuration."""

    state_dir: str = Field(
        default='migration-state', description='Directory for reports and records'
    )
    diagnostics_enabled: bool = Field(
        default=True, description='Persist diagnostics for finally failed requests'
    )
    diagnostics_dir: Optional[str] = Field(
        default=None, description='Diagnostics directory (defaults under state_dir)'
    )
    restrict_group: Optional[str] = Field(
        default=None,
        description='Project group denied the restricted permissions on migrated repositories',
    )
    restricted_permissions: List[str] = Field(
        default_factory=lambda: ['ForcePush', 'EditPolicies', 'PolicyExempt'],
        description='Git repository permissions denied to restrict_group',
    )
    operation_timeout: int = Field(
        default=300, description='Seconds to wait for asynchronous target operations'
    )

    @property
    def resolved_diagnostics_dir(self) -> str:
        return self.diagnostics_dir or str(Path(self.state_dir) / 'diagnostics')


class GitConfig(BaseModel):
    """Git operations configuration."""

    temp_dir: Optional[str] = Field(
        default=None,
        description='Custom temporary directory for git operations. If not specified, uses system temp directory.',
    )
    timeout: int = Field(
        default=3600, description='Git operation timeout in seconds (default: 1 hour)'
    )
    cleanup_temp: bool = Field(
        default=True,
        description='Whether to cleanup temporary directories after migration',
    )
    lfs_enabled: bool = Field(
        default=True, description='Enable Git LFS support for large files'
    )

    @field_validator('temp_dir')
    @classmethod
    def validate_temp_dir(cls, v):
        """Validate temp directory path."""
        if v is not None and not Path(v).is_absolute():
            raise ValueError('temp_dir must be an absolute path')
        return v

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError('Git timeout must be positive')
        return v


class GroupSpec(BaseModel):
    """Project security group to provision."""

    name: str
    description: str = ''
    members: List[str] = Field(
        default_factory=list, description='Principal names of members to add'
    )


class WorkItemTemplateSpec(BaseModel):
    """Work item template to provision for a team."""

    name: str
    work_item_type: str = Field(default='User Story')
    description: str = ''
    team: Optional[str] = Field(
        default=None, description='Team name, defaults to the project default team'
    )
    fields: Dict[str, Any] = Field(default_factory=dict)


class ScaffoldConfig(BaseModel):
    """Project scaffolding provisioned by the scaffold command."""

    description: str = Field(default='', description='Project description')
    visibility: str = Field(default='private')
    source_control_type: str = Field(default='Git')
    process_template_id: str = Field(
        default='adcc42ab-9882-485e-a3ed-7678f01f66bc',
        description='Process template id (Agile by default)',
    )
    wiki_name: Optional[str] = Field(default=None, description='Project wiki name')
    groups: List[GroupSpec] = Field(default_factory=list)
    work_item_templates: List[WorkItemTemplateSpec] = Field(default_factory=list)

    @field_validator('visibility')
    @classmethod
    def validate_visibility(cls, v):
        if v not in ('private', 'public'):
            raise ValueError('visibility must be private or public')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: Optional[str] = Field(default=None, description='Log format')

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Main configuration class for the migration tool."""

    model_config = ConfigDict(extra='forbid')

    source: SourceConfig = Field(..., description='Source GitLab instance')
    target: TargetConfig = Field(..., description='Target Azure DevOps instance')
    retry: RetryConfig = Field(default_factory=RetryConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    branch_policies: BranchPolicyConfig = Field(default_factory=BranchPolicyConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    scaffold: ScaffoldConfig = Field(default_factory=ScaffoldConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode='after')
    def validate_fallback(self):
        if self.target.allow_insecure_fallback and not self.target.is_internal_host:
            raise ValueError(
                'allow_insecure_fallback is only supported for internally hosted targets'
            )
        return self

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config_data = {
            'source': {
                'url': os.getenv('GITLAB_URL'),
                'token': os.getenv('GITLAB_TOKEN'),
            },
            'target': {
                'url': os.getenv('ADO_URL'),
                'pat': os.getenv('ADO_PAT'),
                'api_version': os.getenv('ADO_API_VERSION'),
                'verify_ssl': os.getenv('ADO_VERIFY_SSL', 'true').lower() == 'true',
                'ca_bundle': os.getenv('ADO_CA_BUNDLE'),
                'allow_insecure_fallback': os.getenv(
                    'ADO_ALLOW_INSECURE_FALLBACK', 'false'
                ).lower()
                == 'true',
            },
            'retry': {
                'max_attempts': int(os.getenv('MIGRATION_MAX_ATTEMPTS', 4)),
                'base_delay': float(os.getenv('MIGRATION_BASE_DELAY', 1.0)),
            },
            'migration': {
                'state_dir': os.getenv('MIGRATION_STATE_DIR', 'migration-state'),
                'restrict_group': os.getenv('MIGRATION_RESTRICT_GROUP'),
                'diagnostics_enabled': os.getenv(
                    'MIGRATION_DIAGNOSTICS', 'true'
                ).lower()
                == 'true',
            },
            'git': {
                'temp_dir': os.getenv('GIT_TEMP_DIR'),
                'timeout': int(os.getenv('GIT_TIMEOUT', 3600)),
                'cleanup_temp': os.getenv('GIT_CLEANUP_TEMP', 'true').lower() == 'true',
                'lfs_enabled': os.getenv('GIT_LFS_ENABLED', 'true').lower() == 'true',
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                self.model_dump(mode='json'),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'source': {
                'url': 'https://gitlab.example.com',
                'token': 'your-gitlab-personal-access-token',
                'api_version': 'v4',
                'timeout': 30,
            },
            'target': {
                'url': 'https://dev.azure.com/your-organization',
                'pat': 'your-azure-devops-personal-access-token',
                'api_version': None,
                'timeout': 30,
                'verify_ssl': True,
                'allow_insecure_fallback': False,
            },
            'retry': {
                'max_attempts': 4,
                'base_delay': 1.0,
            },
            'migration': {
                'state_dir': 'migration-state',
                'diagnostics_enabled': True,
                'restrict_group': 'Contributors',
                'restricted_permissions': ['ForcePush', 'EditPolicies', 'PolicyExempt'],
            },
            'branch_policies': {
                'enabled': True,
                'minimum_reviewers': 1,
                'require_comment_resolution': True,
                'require_work_item_link': False,
            },
            'git': {
                'temp_dir': '/tmp/gitlab-ado-migration',
                'timeout': 3600,
                'cleanup_temp': True,
                'lfs_enabled': True,
            },
            'scaffold': {
                'description': '',
                'visibility': 'private',
                'wiki_name': None,
                'groups': [],
                'work_item_templates': [],
            },
            'logging': {
                'level': 'INFO',
                'file': 'migration.log',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )
