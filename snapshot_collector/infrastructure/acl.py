from datetime import datetime
from typing import Any, Dict, Optional
from snapshot_collector.domain.models import RepositoryData

class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub GraphQL repository nodes into RepositoryData instances.
    """

    @staticmethod
    def _parse_timestamp(raw_date: Optional[str]) -> Optional[datetime]:
        if not raw_date:
            return None
        return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))

    @staticmethod
    def to_domain(raw_node: Dict[str, Any]) -> RepositoryData:
        """
        Transforms a raw GitHub GraphQL repository node into RepositoryData.

        Args:
            raw_node (Dict[str, Any]): The aliased repository object from the GraphQL response.

        Returns:
            RepositoryData: The complete repository state.

        Raises:
            ValueError: If the node lacks the immutable databaseId or owner/name.
        """

        github_id = raw_node.get('databaseId')
        if github_id is None:
            raise ValueError("databaseId is required to build RepositoryData.")

        # Nested objects come back as null rather than missing
        owner_data = raw_node.get('owner') or {}
        language_data = raw_node.get('primaryLanguage') or {}
        topic_nodes = (raw_node.get('repositoryTopics') or {}).get('nodes') or []
        license_data = raw_node.get('licenseInfo') or {}
        branch_data = raw_node.get('defaultBranchRef') or {}

        owner = owner_data.get('login')
        name = raw_node.get('name')
        if not owner or not name:
            raise ValueError("owner.login and name are required to build RepositoryData.")

        topics = []
        for node in topic_nodes:
            topic_name = ((node or {}).get('topic') or {}).get('name')
            if topic_name:
                topics.append(topic_name)

        return RepositoryData(
            github_id=github_id,
            owner=owner,
            name=name,
            description=raw_node.get('description'),
            homepage=raw_node.get('homepageUrl') or None,
            language=language_data.get('name'),
            topics=topics,
            stars=raw_node.get('stargazerCount') or 0,
            forks=raw_node.get('forkCount') or 0,
            watchers=(raw_node.get('watchers') or {}).get('totalCount', 0),
            open_issues=(raw_node.get('issues') or {}).get('totalCount', 0),
            size=raw_node.get('diskUsage') or 0,
            is_fork=bool(raw_node.get('isFork')),
            is_archived=bool(raw_node.get('isArchived')),
            is_disabled=bool(raw_node.get('isDisabled')),
            license=license_data.get('name'),
            default_branch=branch_data.get('name'),
            github_created_at=GitHubTranslator._parse_timestamp(raw_node.get('createdAt')),
            github_updated_at=GitHubTranslator._parse_timestamp(raw_node.get('updatedAt')),
            github_pushed_at=GitHubTranslator._parse_timestamp(raw_node.get('pushedAt')),
        )
