"""Tenant, member and project lookups."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import cast

from sqlalchemy import select

from .database import session_scope
from .models import Project, Team, TeamMember


@dataclass(frozen=True)
class TeamAudience:
    team_id: int
    team_name: str
    webhook_url: str | None
    emails: list[str] = field(default_factory=list)


def create_team(
    name: str, timezone: str = "UTC", slack_webhook_url: str | None = None
) -> Team:
    with session_scope() as session:
        team = Team(name=name, timezone=timezone, slack_webhook_url=slack_webhook_url)
        session.add(team)
        session.flush()
        return team


def get_team(team_id: int) -> Team | None:
    with session_scope() as session:
        return session.get(Team, team_id)


def add_member(team_id: int, email: str, name: str | None = None) -> TeamMember:
    with session_scope() as session:
        member = TeamMember(team_id=team_id, email=email, name=name)
        session.add(member)
        session.flush()
        return member


def create_project(
    team_id: int,
    name: str,
    *,
    provider: str | None = None,
    organization_id: str | None = None,
    provider_project_id: str | None = None,
) -> Project:
    with session_scope() as session:
        project = Project(
            team_id=team_id,
            name=name,
            provider=provider,
            organization_id=organization_id,
            provider_project_id=provider_project_id,
        )
        session.add(project)
        session.flush()
        return project


def list_projects_for_organization(
    team_id: int, provider: str, organization_id: str
) -> list[Project]:
    """Projects in a credential's scope that carry a provider project id."""
    with session_scope() as session:
        rows = session.scalars(
            select(Project)
            .where(
                Project.team_id == team_id,
                Project.provider == provider,
                Project.organization_id == organization_id,
                Project.provider_project_id.is_not(None),
            )
            .order_by(Project.id)
        ).all()
        return list(rows)


def get_team_audience(team_id: int) -> TeamAudience | None:
    """Everyone who should hear about a breach in one of the team's projects."""
    with session_scope() as session:
        team = session.get(Team, team_id)
        if team is None:
            return None
        emails = session.scalars(
            select(TeamMember.email)
            .where(TeamMember.team_id == team_id)
            .order_by(TeamMember.id)
        ).all()
        return TeamAudience(
            team_id=team_id,
            team_name=cast(str, team.name),
            webhook_url=cast(str | None, team.slack_webhook_url),
            emails=[cast(str, email) for email in emails],
        )
