"""Project scaffolding: the target project and its supporting resources."""

from typing import List

from loguru import logger
from pydantic import BaseModel, Field

from ..config.config import ScaffoldConfig
from ..models.group import SecurityGroup
from ..models.project import TargetProject
from ..models.resource import EnsuredResource
from .reconciler import ResourceReconciler


class ScaffoldResult(BaseModel):
    project: str
    resources: List[EnsuredResource] = Field(default_factory=list)

    @property
    def created(self) -> List[EnsuredResource]:
        return [r for r in self.resources if r.created]


class ProjectScaffolder:
    """Provisions a project, its wiki, groups and work item templates.

    Safe to re-run: every resource goes through the reconciler, so existing
    ones are returned unchanged.
    """

    def __init__(self, reconciler: ResourceReconciler):
        self.reconciler = reconciler
        self.logger = logger.bind(component='ProjectScaffolder')

    def scaffold(self, project_name: str, plan: ScaffoldConfig) -> ScaffoldResult:
        result = ScaffoldResult(project=project_name)

        ensured = self.reconciler.ensure_project(
            project_name,
            description=plan.description,
            visibility=plan.visibility,
            process_template_id=plan.process_template_id,
            source_control_type=plan.source_control_type,
            allow_existing=True,
        )
        result.resources.append(ensured)
        project = TargetProject(**ensured.data)

        result.resources.append(self.reconciler.ensure_wiki(project, plan.wiki_name))

        for spec in plan.groups:
            group = self.reconciler.ensure_group(project, spec.name, spec.description)
            result.resources.append(group)
            security_group = SecurityGroup(**group.data)
            for member in spec.members:
                result.resources.append(
                    self.reconciler.ensure_membership(security_group, member)
                )

        for template in plan.work_item_templates:
            result.resources.append(
                self.reconciler.ensure_work_item_template(
                    project,
                    template.name,
                    template.work_item_type,
                    description=template.description,
                    fields=template.fields,
                    team=template.team,
                )
            )

        self.logger.info(
            f'Scaffolded {project_name!r}: {len(result.created)} created, '
            f'{len(result.resources) - len(result.created)} already present'
        )
        return result
