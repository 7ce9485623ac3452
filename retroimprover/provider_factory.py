from .pipeline.animate import KieVideoProvider, VeoVideoProvider
from .pipeline.gemini import GeminiClient
from .pipeline.jobs import JobClient, VideoProvider
from .pipeline.prompts import GeminiPromptProvider
from .pipeline.restore import GeminiRestorationProvider

VIDEO_PROVIDERS = ("gemini", "kie")


class ProviderFactory:
    @staticmethod
    def get_video_provider(name: str, gemini: GeminiClient) -> VideoProvider:
        if name == "kie":
            return KieVideoProvider()
        if name == "gemini":
            return VeoVideoProvider(gemini)
        raise ValueError(f"Unknown VIDEO_PROVIDER {name!r}, expected one of {VIDEO_PROVIDERS}")

    @staticmethod
    def build_job_client(video_provider: str, **kwargs) -> JobClient:
        gemini = GeminiClient()
        return JobClient(
            restorer=GeminiRestorationProvider(gemini),
            prompter=GeminiPromptProvider(gemini),
            animator=ProviderFactory.get_video_provider(video_provider, gemini),
            **kwargs,
        )
