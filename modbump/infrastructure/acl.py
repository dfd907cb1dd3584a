from typing import Any, Dict, List

from modbump.domain.models import Repository, SCMKind, VCSKind


class BitbucketTranslator:
    """
    Anti-corruption layer that translates raw Bitbucket Server JSON into Repository instances.
    """

    @staticmethod
    def clone_url(clone_type: str, clone_links: List[Dict[str, Any]]) -> str:
        """Picks the clone link whose name matches the clone type ('http' or 'ssh')."""
        for link in clone_links:
            if str(link.get('name', '')).lower() == clone_type.lower():
                return link.get('href', '')
        return ''

    @staticmethod
    def to_domain(
        raw_node: Dict[str, Any],
        project_key: str,
        clone_type: str = "http",
        vcs_kind: VCSKind = VCSKind.GIT,
    ) -> Repository:
        """
        Transforms a raw Bitbucket Server repository node into a Repository.

        Args:
            raw_node (Dict[str, Any]): One entry of the 'values' list of a repos page.
            project_key (str): Project the repository was listed under.
            clone_type (str): Which clone link to use.
            vcs_kind (VCSKind): Version-control kind the repository is handled with.

        Returns:
            Repository: The domain model instance representing the repository.
        """
        slug = raw_node.get('slug')
        if not slug:
            raise ValueError("slug is required to build Repository.")

        # Extract nested fields with safe defaults
        links_data = raw_node.get('links', {})
        project_data = raw_node.get('project', {})

        return Repository(
            name=slug,
            url=BitbucketTranslator.clone_url(clone_type, links_data.get('clone', [])),
            parent=project_data.get('key') or project_key,
            scm=SCMKind.BITBUCKET_SERVER,
            vcs=vcs_kind,
        )
