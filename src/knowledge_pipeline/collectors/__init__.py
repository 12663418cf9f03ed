from knowledge_pipeline.collectors.forum import ForumCollector
from knowledge_pipeline.collectors.github import GitHubCollector, is_relevant_file

__all__ = ["ForumCollector", "GitHubCollector", "is_relevant_file"]
