"""Five-layer stack composition and the legacy template table."""

from pydantic import BaseModel, ConfigDict, field_validator

NO_MOBILE = "none"
COMPOSITION_SEPARATOR = "+"
LAYERS: tuple[str, ...] = ("base", "mobile", "backend", "data", "architecture")


class StackComposition(BaseModel):
    """Immutable base/mobile/backend/data/architecture stack description."""

    model_config = ConfigDict(frozen=True)

    base: str
    mobile: str = NO_MOBILE
    backend: str
    data: str
    architecture: str

    @field_validator("base", "mobile", "backend", "data", "architecture")
    @classmethod
    def _layer_populated(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("every composition layer must be populated")
        if COMPOSITION_SEPARATOR in value:
            raise ValueError(f"layer ids may not contain '{COMPOSITION_SEPARATOR}'")
        return value

    @property
    def has_mobile(self) -> bool:
        return self.mobile != NO_MOBILE

    def to_id(self) -> str:
        """Compositional stack id, e.g. ``nextjs_app_router+none+integrated+neon_postgres+monolith``."""
        return COMPOSITION_SEPARATOR.join(getattr(self, layer) for layer in LAYERS)


class LegacyTemplateMapping(BaseModel):
    """Old flat template id -> composition, with a human-readable reason."""

    model_config = ConfigDict(frozen=True)

    composition: StackComposition
    reason: str


def is_composition_id(stack_id: str) -> bool:
    return stack_id.count(COMPOSITION_SEPARATOR) == len(LAYERS) - 1


def parse_composition_id(stack_id: str) -> StackComposition:
    """Parse a ``base+mobile+backend+data+architecture`` id.

    Raises:
        ValueError: If the id does not have exactly five populated layers
    """
    parts = stack_id.split(COMPOSITION_SEPARATOR)
    if len(parts) != len(LAYERS):
        raise ValueError(f"Composition id must have {len(LAYERS)} layers: {stack_id!r}")
    return StackComposition(**dict(zip(LAYERS, parts)))


def _mapping(base: str, mobile: str, backend: str, data: str, architecture: str, reason: str) -> LegacyTemplateMapping:
    return LegacyTemplateMapping(
        composition=StackComposition(
            base=base, mobile=mobile, backend=backend, data=data, architecture=architecture
        ),
        reason=reason,
    )


DEFAULT_LEGACY_MAPPINGS: dict[str, LegacyTemplateMapping] = {
    "nextjs_fullstack_expo": _mapping(
        "nextjs_app_router", "expo_integration", "integrated", "neon_postgres", "monolith",
        "Full-stack Next.js + Expo split into web base and mobile addon",
    ),
    "hybrid_nextjs_fastapi": _mapping(
        "nextjs_app_router", "expo_integration", "fastapi_api", "postgresql", "microservices",
        "Next.js frontend with a separate FastAPI service",
    ),
    "nextjs_web_app": _mapping(
        "nextjs_app_router", NO_MOBILE, "integrated", "neon_postgres", "monolith",
        "Web-only Next.js",
    ),
    "nextjs_web_only": _mapping(
        "nextjs_app_router", NO_MOBILE, "integrated", "neon_postgres", "monolith",
        "Web-only Next.js (alias of nextjs_web_app)",
    ),
    "react_express": _mapping(
        "react_spa", NO_MOBILE, "express_api", "postgresql", "monolith",
        "React SPA with an Express API",
    ),
    "vue_nuxt": _mapping(
        "vue_nuxt", NO_MOBILE, "integrated", "neon_postgres", "monolith",
        "Nuxt full-stack with integrated server routes",
    ),
    "svelte_kit": _mapping(
        "sveltekit", NO_MOBILE, "integrated", "neon_postgres", "monolith",
        "SvelteKit full-stack with integrated endpoints",
    ),
    "astro_static": _mapping(
        "astro", NO_MOBILE, "serverless_only", "headless_cms", "monolith",
        "Static Astro site backed by a headless CMS",
    ),
    "serverless_edge": _mapping(
        "nextjs_app_router", NO_MOBILE, "serverless_only", "turso", "edge",
        "Edge-deployed Next.js with serverless functions",
    ),
    "django_htmx": _mapping(
        "django", NO_MOBILE, "integrated", "postgresql", "monolith",
        "Server-rendered Django with HTMX",
    ),
    "go_react": _mapping(
        "react_spa", NO_MOBILE, "go_api", "postgresql", "microservices",
        "React SPA with a Go API service",
    ),
    "flutter_firebase": _mapping(
        "react_spa", "flutter", "integrated", "firebase_full", "monolith",
        "Flutter app on Firebase, with a React web companion",
    ),
    "react_native_supabase": _mapping(
        "nextjs_app_router", "react_native_bare", "integrated", "supabase_full", "monolith",
        "React Native bare workflow on Supabase, with a Next.js web base",
    ),
}
