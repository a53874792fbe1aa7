"""
Email templates for subscription lifecycle and new-post notifications.

HTML templates are autoescaped; plain-text templates are not.
"""

from dataclasses import dataclass

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

MAX_TAG_PILLS = 8

_BUTTON_STYLE = (
    "display:inline-block; background:#0b4f9f; color:#ffffff; text-decoration:none; "
    "padding:10px 14px; border-radius:10px; font-weight:700;"
)

_LAYOUT = """
<div style="font-family: Arial, sans-serif; line-height: 1.55; color: #111827;">
  <div style="max-width: 560px; margin: 0 auto; padding: 18px 12px;">
    {% if preheader %}<div style="display:none; max-height:0; overflow:hidden; opacity:0;">{{ preheader }}</div>{% endif %}
    <div style="border: 1px solid #e5e7eb; border-radius: 16px; overflow: hidden;">
      <div style="background: {{ header_background }}; padding: 18px;">
        {% if brand_logo_url %}<img src="{{ brand_logo_url }}" alt="" width="28" height="28" style="display:block; margin-bottom:8px;" />{% endif %}
        <div style="font-size: 12px; letter-spacing: 0.12em; text-transform: uppercase; color: rgba(255,255,255,0.85); font-weight: 700;">{{ eyebrow }}</div>
        <div style="font-size: 22px; color: #ffffff; margin-top: 8px; font-weight: 800;">{{ heading }}</div>
      </div>
      {% block hero %}{% endblock %}
      <div style="padding: 18px;">{% block body %}{% endblock %}</div>
    </div>
  </div>
</div>
"""

_TEMPLATES = {
    "layout.html": _LAYOUT,
    "confirm.html": """{% extends "layout.html" %}
{% block body %}
<p style="margin: 0 0 16px;">Click the button below to confirm your subscription.</p>
<p style="margin: 0 0 20px;"><a href="{{ confirm_url }}" style="{{ button_style }}">Confirm Subscription</a></p>
<p style="margin: 0; color: #6b7280; font-size: 13px;">If you did not request this, you can ignore this email.</p>
{% endblock %}""",
    "confirm.txt": """Confirm your email subscription:
{{ confirm_url }}

If you did not request this, you can ignore this email.""",
    "subscribed.html": """{% extends "layout.html" %}
{% block body %}
<p style="margin: 0 0 14px; color: #374151;">Thanks for subscribing. You'll get an email whenever a new post is published.</p>
<p style="margin: 0 0 18px;"><a href="{{ blog_url }}" style="{{ button_style }}">Visit the blog</a></p>
<p style="margin: 0; color: #6b7280; font-size: 13px;">If you ever change your mind:
<a href="{{ unsubscribe_url }}" style="color: #0b4f9f; text-decoration: underline;">Unsubscribe</a>.</p>
{% endblock %}""",
    "subscribed.txt": """You're subscribed to blog updates.

Blog: {{ blog_url }}
Unsubscribe: {{ unsubscribe_url }}""",
    "unsubscribed.html": """{% extends "layout.html" %}
{% block body %}
<p style="margin: 0 0 14px; color: #374151;">You've been removed from the mailing list and won't receive further notifications.</p>
{% if resubscribe_url %}<p style="margin: 0 0 18px;"><a href="{{ resubscribe_url }}" style="{{ button_style }}">Resubscribe</a></p>{% endif %}
{% if blog_url %}<p style="margin: 0; color: #6b7280; font-size: 13px;">You can still read posts anytime at
<a href="{{ blog_url }}" style="color: #0b4f9f; text-decoration: underline;">the blog</a>.</p>{% endif %}
{% endblock %}""",
    "unsubscribed.txt": """You have been unsubscribed from blog updates.
{% if blog_url %}
Blog: {{ blog_url }}{% endif %}{% if resubscribe_url %}
Resubscribe: {{ resubscribe_url }}{% endif %}""",
    "manage.html": """{% extends "layout.html" %}
{% block body %}
<p style="margin: 0 0 14px; color: #374151;">Use the link below to choose which updates you receive. It expires in 7 days.</p>
<p style="margin: 0 0 18px;"><a href="{{ manage_url }}" style="{{ button_style }}">Manage preferences</a></p>
<p style="margin: 0; color: #6b7280; font-size: 13px;">If you did not request this, you can ignore this email.</p>
{% endblock %}""",
    "manage.txt": """Manage your email preferences (link expires in 7 days):
{{ manage_url }}

If you did not request this, you can ignore this email.""",
    "new_post.html": """{% extends "layout.html" %}
{% block hero %}{% if image_url %}<img src="{{ image_url }}" alt="{{ title }} cover image" style="display:block; width:100%; height:auto; background:#111827;" />{% endif %}{% endblock %}
{% block body %}
{% if read_time_minutes %}<div style="margin: 0 0 10px; color:#6b7280; font-size: 13px; font-weight: 700;">{{ read_time_minutes }} min read</div>{% endif %}
{% if summary %}<p style="margin: 0 0 14px; color: #374151;">{{ summary }}</p>{% endif %}
{% if tags %}<div style="margin: 10px 0 4px;">{% for tag in tags %}<span style="display:inline-block; padding: 4px 10px; border-radius: 999px; border: 1px solid #e5e7eb; background: #f9fafb; font-size:12px; font-weight:700; margin: 0 6px 6px 0;">{{ tag }}</span>{% endfor %}</div>{% endif %}
<p style="margin: 0 0 18px;"><a href="{{ post_url }}" style="{{ button_style }}">Read the post</a></p>
<p style="margin: 0; color: #6b7280; font-size: 13px;">You're receiving this because you subscribed to blog updates.
<a href="{{ unsubscribe_url }}" style="color: #0b4f9f; text-decoration: underline;">Unsubscribe</a>.</p>
{% endblock %}""",
    "new_post.txt": """{{ title }}

{{ summary }}{% if read_time_minutes %}
Read time: {{ read_time_minutes }} min{% endif %}{% if tags %}
Tags: {{ tags | join(", ") }}{% endif %}

Read: {{ post_url }}

Unsubscribe: {{ unsubscribe_url }}""",
}

_env = Environment(
    loader=DictLoader(_TEMPLATES),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)

_GRADIENT = "linear-gradient(135deg, #0b4f9f 0%, #f18f3b 100%)"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


def _render(name: str, subject: str, **context) -> RenderedEmail:
    context.setdefault("button_style", _BUTTON_STYLE)
    context.setdefault("brand_logo_url", None)
    context.setdefault("preheader", None)
    context.setdefault("header_background", _GRADIENT)
    html = _env.get_template(f"{name}.html").render(**context).strip()
    text = _env.get_template(f"{name}.txt").render(**context).strip()
    return RenderedEmail(subject=subject, text=text, html=html)


def build_confirm_email(confirm_url: str, brand_logo_url: str | None = None) -> RenderedEmail:
    return _render(
        "confirm",
        "Confirm your subscription",
        confirm_url=confirm_url,
        brand_logo_url=brand_logo_url,
        eyebrow="One more step",
        heading="Confirm your subscription",
    )


def build_subscribed_email(
    blog_url: str, unsubscribe_url: str, brand_logo_url: str | None = None
) -> RenderedEmail:
    return _render(
        "subscribed",
        "You're subscribed",
        blog_url=blog_url,
        unsubscribe_url=unsubscribe_url,
        brand_logo_url=brand_logo_url,
        eyebrow="Subscription confirmed",
        heading="You're subscribed",
    )


def build_unsubscribed_email(
    blog_url: str | None, resubscribe_url: str | None, brand_logo_url: str | None = None
) -> RenderedEmail:
    return _render(
        "unsubscribed",
        "You're unsubscribed",
        blog_url=blog_url,
        resubscribe_url=resubscribe_url,
        brand_logo_url=brand_logo_url,
        eyebrow="Preferences updated",
        heading="You're unsubscribed",
        header_background="#111827",
    )


def build_manage_email(manage_url: str, brand_logo_url: str | None = None) -> RenderedEmail:
    return _render(
        "manage",
        "Manage your email preferences",
        manage_url=manage_url,
        brand_logo_url=brand_logo_url,
        eyebrow="Email preferences",
        heading="Manage your subscription",
    )


def build_new_post_email(
    title: str,
    summary: str,
    post_url: str,
    unsubscribe_url: str,
    image_url: str | None = None,
    tags: list[str] | None = None,
    read_time_minutes: int | None = None,
) -> RenderedEmail:
    safe_title = title or "New blog post"
    clean_tags = [str(t).strip() for t in (tags or []) if str(t).strip()][:MAX_TAG_PILLS]
    minutes = round(read_time_minutes) if read_time_minutes and read_time_minutes > 0 else None
    return _render(
        "new_post",
        safe_title,
        title=safe_title,
        summary=summary or "",
        post_url=post_url,
        unsubscribe_url=unsubscribe_url,
        image_url=image_url,
        tags=clean_tags,
        read_time_minutes=minutes,
        preheader=summary or f"New post: {safe_title}",
        eyebrow="New post",
        heading=safe_title,
    )
