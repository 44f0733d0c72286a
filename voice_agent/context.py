"""页面上下文：当前路由、路由表与帮助文本"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

# 已知导航路由（同时写入远程提示词）
ROUTES: Dict[str, str] = {
    "/": "Home page",
    "/explore": "Browse all courses",
    "/login": "Sign in page",
    "/my-courses": "My enrolled courses",
    "/settings": "User settings",
    "/courses": "Instructor dashboard",
    "/reporting": "Reports dashboard",
}

PAGE_HELP: Dict[str, str] = {
    "/": 'You are on the home page. You can say "explore courses", "sign in", "search for React", or click on any course card.',
    "/explore": "You are on the Explore page. You can search for courses, filter by tags, or click on a course to view details.",
    "/login": 'You are on the login page. You can say "sign in", "create account", "continue as guest", or "forgot password".',
    "/my-courses": "You are on My Courses. You can see your enrolled courses, click on one to continue, or explore more courses.",
    "/courses": "You are on the instructor dashboard. You can create a course, switch between kanban and list view, or search courses.",
    "/reporting": "You are on the reporting dashboard. You can filter by status, sort columns, or search participants.",
    "/settings": "You are on the settings page. You can switch tabs for Profile, Notifications, Privacy, Appearance, and Admin.",
}

# 按前缀匹配的动态路由
PREFIX_HELP: List[Tuple[str, str]] = [
    ("/course/", "You are viewing a course. You can enroll, view lessons, read reviews, or go back."),
    ("/lesson/", "You are in the lesson player. You can navigate between lessons, mark complete, or go back to the course."),
    ("/course-form", "You are editing a course. You can switch tabs, add lessons, manage tags, preview, or save."),
    ("/quiz-builder", "You are building a quiz. You can add questions, set correct answers, configure rewards, or save."),
]

DEFAULT_HELP = "You can ask me to click any button, navigate to a page, scroll, or get help with what's on screen."

QUICK_COMMANDS = [
    {"label": "Help", "command": "help"},
    {"label": "Explore", "command": "go to explore"},
    {"label": "My Courses", "command": "go to my courses"},
    {"label": "Scroll Down", "command": "scroll down"},
    {"label": "Go Back", "command": "go back"},
    {"label": "Dark Mode", "command": "toggle theme"},
]


def help_for_route(
    route: str,
    page_help: Optional[Dict[str, str]] = None,
    prefix_help: Optional[List[Tuple[str, str]]] = None,
) -> str:
    page_help = PAGE_HELP if page_help is None else page_help
    prefix_help = PREFIX_HELP if prefix_help is None else prefix_help
    if route in page_help:
        return page_help[route]
    for prefix, text in prefix_help:
        if route.startswith(prefix):
            return text
    return DEFAULT_HELP


class PageContext(ABC):
    """宿主提供的页面上下文"""

    routes: Dict[str, str] = ROUTES

    @property
    @abstractmethod
    def current_route(self) -> str:
        ...

    def help_text(self, route: str) -> str:
        return help_for_route(route)


class StaticPageContext(PageContext):
    """路由由宿主手动更新的实现，也用于测试"""

    def __init__(self, route: str = "/", routes: Optional[Dict[str, str]] = None,
                 page_help: Optional[Dict[str, str]] = None):
        self.route = route
        if routes is not None:
            self.routes = routes
        self.page_help = page_help

    @property
    def current_route(self) -> str:
        return self.route

    def help_text(self, route: str) -> str:
        return help_for_route(route, self.page_help)


class Navigator(ABC):
    """宿主的路由跳转能力"""

    @abstractmethod
    async def navigate_to(self, route: str) -> None:
        ...

    @abstractmethod
    async def go_back(self) -> None:
        ...
