from knowledge_pipeline.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
