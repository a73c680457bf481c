"""
Adapters for the external content providers:
- OpenAI chat completions for generated text
- YouTube Data API v3 search for a matching embeddable video
"""

import threading
from typing import List, Optional, Union

import google.auth.exceptions
import httplib2
import openai
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import build_http
from openai import OpenAI

from content import ProviderUnavailable

DEFAULT_MODEL = "gpt-4"


class OpenAITextService:
    """Generative text via OpenAI chat completions. Failed calls are never retried."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        base_url: Optional[str] = None,
        http_client=None
    ):
        self.model = model
        self._client = client
        self._api_key = api_key
        self._timeout = timeout
        self._base_url = base_url
        self._http_client = http_client

    @property
    def client(self) -> OpenAI:
        # Built on first use so the app can start without credentials.
        # The SDK retries twice by default; one attempt per call here.
        if self._client is None:
            self._client = OpenAI(
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=0,
                base_url=self._base_url,
                http_client=self._http_client,
            )
        return self._client

    def complete(self, prompt: Union[str, List[dict]]) -> str:
        """
        Send a prompt and return the model's text.

        Args:
            prompt: a single user prompt, or a list of {"role", "content"} messages

        Returns:
            The response text, or "" if the model returned no content

        Raises:
            ProviderUnavailable: on connection, timeout or API errors
        """
        if isinstance(prompt, str):
            messages = [{"role": "user", "content": prompt}]
        else:
            messages = list(prompt)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
            )
        except openai.OpenAIError as e:
            print(f"[OpenAI] API error: {type(e).__name__} - {e}")
            raise ProviderUnavailable(f"OpenAI request failed: {e}") from e

        usage = getattr(response, 'usage', None)
        if usage:
            print(f"[OpenAI] {self.model}: {usage.prompt_tokens} in / {usage.completion_tokens} out")

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class YouTubeVideoSearch:
    """Finds the most relevant embeddable YouTube video for a query."""

    def __init__(self, youtube=None, api_key: Optional[str] = None, language: str = "en"):
        self.language = language
        self._youtube = youtube
        self._api_key = api_key
        self._build_lock = threading.Lock()

    @property
    def youtube(self):
        with self._build_lock:
            if self._youtube is None:
                self._youtube = build('youtube', 'v3', developerKey=self._api_key, cache_discovery=False)
            return self._youtube

    def search(self, query: str, embeddable: bool = True, max_results: int = 1) -> Optional[str]:
        """
        Search YouTube and return the top video ID, or None if nothing matched.

        Raises:
            ProviderUnavailable: on API or transport errors
        """
        search_params = {
            "part": "snippet",
            "q": query,
            "type": "video",
            "maxResults": max_results,
            "relevanceLanguage": self.language,
        }
        if embeddable:
            search_params["videoEmbeddable"] = "true"

        try:
            request = self.youtube.search().list(**search_params)
            # httplib2.Http is not thread-safe, so every call gets its own
            response = request.execute(http=build_http())
        except (HttpError, httplib2.HttpLib2Error, google.auth.exceptions.GoogleAuthError, OSError) as e:
            print(f"[YouTube] Search failed for '{query[:60]}': {e}")
            raise ProviderUnavailable(f"YouTube search failed: {e}") from e

        for item in response.get("items", []):
            video_id = item.get("id", {}).get("videoId")
            if video_id:
                print(f"[YouTube] '{query[:60]}' -> {video_id}")
                return video_id

        print(f"[YouTube] No results for '{query[:60]}'")
        return None
