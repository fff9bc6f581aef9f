"""Story selection through the in-page harness hooks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from playwright.async_api import Page

from storyshot.models.story import StoryDescriptor

if TYPE_CHECKING:
    from storyshot.worker.context import TestContext

    from .session import SessionManager

logger = logging.getLogger(__name__)

MISSING_HARNESS_MESSAGE = (
    "Can't switch story. This may happen if the storyshot addon is missing from "
    "the storybook config, or storybook failed to load in the browser due to a syntax error."
)

_SELECT_STORY_JS = """([id, kind, name, shouldWaitForReady]) => new Promise((resolve) => {
    if (typeof window.__STORYSHOT_SELECT_STORY__ == 'undefined') {
        return resolve({missing: true});
    }
    window.__STORYSHOT_SELECT_STORY__(id, kind, name, shouldWaitForReady, function (error) {
        resolve({error: error ? String(error) : null});
    });
})"""

_UPDATE_GLOBALS_JS = """(globals) => {
    if (typeof window.__STORYSHOT_UPDATE_GLOBALS__ == 'undefined') return false;
    window.__STORYSHOT_UPDATE_GLOBALS__(globals);
    return true;
}"""

_ROOT_CHILDREN_JS = """() => {
    var root = document.getElementById('root');
    return root ? root.childElementCount : 0;
}"""


class StoryHarnessError(Exception):
    """The page has no compatible test harness, or it reported an error."""


async def select_story(page: Page, story: StoryDescriptor, wait_for_ready: bool = False) -> None:
    result = await page.evaluate(
        _SELECT_STORY_JS, [story.id, story.kind, story.name, wait_for_ready],
    )
    if result.get("missing"):
        raise StoryHarnessError(MISSING_HARNESS_MESSAGE)
    if result.get("error"):
        raise StoryHarnessError(result["error"])


async def update_storybook_globals(page: Page, globals: dict[str, Any]) -> None:
    logger.debug("Updating storybook globals: %s", globals)
    applied = await page.evaluate(_UPDATE_GLOBALS_JS, globals)
    if not applied:
        raise StoryHarnessError(
            "Can't update storybook globals, the storyshot addon hooks are not available on the page."
        )


async def resolve_capture_element(page: Page) -> Optional[str]:
    """Pick what to capture from the children of the story root."""
    children_count = await page.evaluate(_ROOT_CHILDREN_JS)
    if children_count == 0:
        return None
    if children_count == 1:
        return "#root > *"
    return "#root"


async def switch_story(manager: SessionManager, context: TestContext) -> None:
    """Select the context's story and record the element to capture.

    The capture target is resolved after selection because the story DOM
    only settles once the story has rendered.
    """
    page = manager.session.page
    story = context.story
    params = story.parameters

    await manager.reset_mouse_position()
    await select_story(page, story, params.wait_for_ready)
    if params.globals:
        await update_storybook_globals(page, params.globals)

    if params.capture_element:
        context.capture_element = params.capture_element
    else:
        context.capture_element = await resolve_capture_element(page)
    logger.debug("Story %s selected, capture element: %s", story.id, context.capture_element)
