#!/usr/bin/env python3
"""
A minimal blog: public readers browse posts, one writer manages them
from a Basic-auth protected admin dashboard.

Admin POSTs need more than credentials: they must echo the session's CSRF
token (form field `csrf` or header `X-CSRFToken`), which is minted by any
admin GET. Scripted clients therefore GET `/admin` first and keep the
cookie jar, or use the `flask add-post` / `delete-post` commands instead.
"""

import os
import secrets
from collections import defaultdict, deque
from datetime import datetime
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from werkzeug.middleware.proxy_fix import ProxyFix

from minblog.store import INVALID_ID, SqliteStore, Store, open_store

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "blog.sqlite3"
SECRET_FILE = ROOT / ".secret_key"

STORE_BACKEND = os.environ.get("BLOG_STORE", "sqlite")
DATABASE = os.environ.get("BLOG_DATABASE", str(DB_FILE))
DB_TIMEOUT = float(os.environ.get("BLOG_DB_TIMEOUT", "5"))
ADMIN_USERNAME = os.environ.get("BLOG_ADMIN_USERNAME", "writer")
ADMIN_PASSWORD = os.environ.get("BLOG_ADMIN_PASSWORD", "password123")
ADMIN_RATE_LIMIT = int(os.environ.get("BLOG_ADMIN_RATE_LIMIT", "60"))
SITE_NAME = os.environ.get("BLOG_SITE_NAME", "Blog")
PORT = int(os.environ.get("PORT", "8080"))

STORE_KEY = "minblog.store"
HITS_KEY = "minblog.admin_hits"

try:
    __version__ = version("minblog")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


def _secret_key() -> str:
    key = os.environ.get("BLOG_SECRET_KEY")
    if key:
        return key
    key = (
        SECRET_FILE.read_text().strip()
        if SECRET_FILE.exists()
        else secrets.token_hex(32)
    )
    SECRET_FILE.write_text(key)
    return key


################################################################################
# App factory
################################################################################
bp = Blueprint("blog", __name__, cli_group=None)


def create_app(config: dict | None = None, store: Store | None = None) -> Flask:
    """
    Build the app and its one Store.

    *config* overrides the environment defaults; *store* (mainly for tests)
    replaces the backend named by ``STORE_BACKEND``.
    """
    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.config.update(
        STORE_BACKEND=STORE_BACKEND,
        DATABASE=DATABASE,
        DB_TIMEOUT=DB_TIMEOUT,
        ADMIN_USERNAME=ADMIN_USERNAME,
        ADMIN_PASSWORD=ADMIN_PASSWORD,
        ADMIN_RATE_LIMIT=ADMIN_RATE_LIMIT,
        SITE_NAME=SITE_NAME,
        SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
        SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    )
    if config:
        app.config.update(config)
    if not app.config.get("SECRET_KEY"):
        app.config["SECRET_KEY"] = _secret_key()

    if store is None:
        store = open_store(
            app.config["STORE_BACKEND"],
            app.config["DATABASE"],
            timeout=app.config["DB_TIMEOUT"],
        )
    app.extensions[STORE_KEY] = store
    app.extensions[HITS_KEY] = defaultdict(deque)

    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
    app.register_blueprint(bp)
    app.jinja_env.globals.update(
        csrf_token=_csrf_token,
        site_name=lambda: current_app.config["SITE_NAME"],
        version=__version__,
    )
    app.logger.info(
        "Using %s store (v%s)", type(store).__name__, __version__
    )
    return app


def get_store() -> Store:
    return current_app.extensions[STORE_KEY]


################################################################################
# Template filters
################################################################################
@bp.app_template_filter("day")
def day_filter(dt: datetime | None) -> str:
    """Jan 2, 2006"""
    if not dt:
        return ""
    return f"{dt:%b} {dt.day}, {dt:%Y}"


@bp.app_template_filter("stamp")
def stamp_filter(dt: datetime | None) -> str:
    """Jan 2, 2006 3:04 PM"""
    if not dt:
        return ""
    hour = dt.hour % 12 or 12
    return f"{day_filter(dt)} {hour}:{dt:%M %p}"


###############################################################################
# Authentication
###############################################################################
def client_ip() -> str:
    # left-most entry after ProxyFix = real client
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


def _unauthorized() -> Response:
    return Response(
        "Unauthorized",
        status=401,
        headers={"WWW-Authenticate": 'Basic realm="admin"'},
    )


def check_credentials(username: str, password: str) -> bool:
    cfg = current_app.config
    # compare both halves every time
    user_ok = secrets.compare_digest(
        username.encode(), str(cfg["ADMIN_USERNAME"]).encode()
    )
    pass_ok = secrets.compare_digest(
        password.encode(), str(cfg["ADMIN_PASSWORD"]).encode()
    )
    return user_ok and pass_ok


def _over_limit() -> int | None:
    """Slide the per-IP window; return seconds to wait if over the limit."""
    limit = int(current_app.config["ADMIN_RATE_LIMIT"])
    window = 60
    now = time()
    hits: DefaultDict[str, deque] = current_app.extensions[HITS_KEY]

    # forget clients whose newest hit has left the window
    for ip in [ip for ip, q in hits.items() if not q or now - q[-1] > window]:
        del hits[ip]

    dq = hits[client_ip()]
    while dq and now - dq[0] > window:
        dq.popleft()
    if len(dq) >= limit:
        return max(1, int(window - (now - dq[0])))
    dq.append(now)
    return None


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def admin_required(view):
    """
    Gate for writer-only views:
    ➊ per-IP rate limit, ➋ HTTP Basic auth, ➌ CSRF token on unsafe verbs.
    """

    @wraps(view)
    def wrapped(*args, **kwargs):
        retry_after = _over_limit()
        if retry_after is not None:
            return Response(
                "Too many requests – try again later.",
                status=429,
                headers={"Retry-After": str(retry_after)},
            )

        auth = request.authorization
        if (
            auth is None
            or auth.type != "basic"
            or not check_credentials(auth.username or "", auth.password or "")
        ):
            if auth is not None:
                current_app.logger.warning("Failed admin login from %s", client_ip())
            return _unauthorized()

        if request.method in SAFE_METHODS:
            session.setdefault("csrf", secrets.token_urlsafe(32))
        else:
            token = session.get("csrf", "")
            sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
            if not token or not secrets.compare_digest(token.encode(), sent.encode()):
                abort(403)

        return view(*args, **kwargs)

    return wrapped


@bp.after_app_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;font-size:1.1rem;line-height:1.6;max-width:38em;margin:auto;padding:13px;color:#c9c9c9;background:#222}
a{color:#fff}h1,h2{line-height:1.1}
.post-content{white-space:pre-wrap}
ul{padding-left:1.4em}li{margin-bottom:.4em}
small{color:#999}
input,textarea{width:100%;box-sizing:border-box;padding:6px 10px;margin-bottom:10px;color:#c9c9c9;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px}
button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer}
button.danger{background:#c00;border-color:#c00;color:#fff}
</style>
<body>
<nav><a href="{{ url_for('blog.index') }}">{{ site_name() }}</a></nav>
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer><small>minblog {{ version }}</small></footer>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
<h1>Blog Posts</h1>
{% if posts %}
<ul>
  {% for p in posts %}
  <li><a href="{{ url_for('blog.post_detail', post_id=p.id) }}">{{ p.title }}</a>
      <small>{{ p.created_at|day }}</small></li>
  {% endfor %}
</ul>
{% else %}
<p>No posts yet.</p>
{% endif %}
""")

TEMPL_POST = wrap("""
<article>
  <h1>{{ post.title }}</h1>
  <p><em>{{ post.created_at|stamp }}</em></p>
  <div class="post-content">{{ post.content }}</div>
</article>
<p><a href="{{ url_for('blog.index') }}">Back to home</a></p>
""")

TEMPL_ADMIN = wrap("""
<h1>Admin Dashboard</h1>
<p><a href="{{ url_for('blog.create_post') }}">Create New Post</a></p>
<h2>All Posts</h2>
{% if posts %}
<ul>
  {% for p in posts %}
  <li>
    {{ p.title }} <small>{{ p.created_at|day }}</small>
    <form action="{{ url_for('blog.delete_post', post_id=p.id) }}" method="post"
          style="display:inline;">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <button class="danger" type="submit"
              onclick="return confirm('Delete this post?')">Delete</button>
    </form>
  </li>
  {% endfor %}
</ul>
{% else %}
<p>No posts yet.</p>
{% endif %}
""")

TEMPL_CREATE = wrap("""
<h1>Create New Post</h1>
{% if error %}<p role="alert">{{ error }}</p>{% endif %}
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label>Title <input type="text" name="title" value="{{ form_title }}" required></label>
  <label>Content <textarea name="content" rows="10" required>{{ form_content }}</textarea></label>
  <button type="submit">Create Post</button>
</form>
<p><a href="{{ url_for('blog.admin') }}">Back to admin</a></p>
""")

TEMPL_404 = wrap("""
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('blog.index') }}">Back to the front page</a>.</p>
""")

TEMPL_500 = wrap("""
<h2>Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# Public views
###############################################################################
@bp.route("/")
def index():
    return render_template_string(TEMPL_INDEX, posts=get_store().list())


@bp.route("/post/<int:post_id>")
def post_detail(post_id: int):
    post = get_store().get(post_id)
    if post is None:
        abort(404)
    return render_template_string(TEMPL_POST, post=post, title=post.title)


###############################################################################
# Admin views
###############################################################################
@bp.route("/admin")
@admin_required
def admin():
    return render_template_string(
        TEMPL_ADMIN, posts=get_store().list(), title="Admin Dashboard"
    )


@bp.route("/admin/create", methods=["GET", "POST"])
@admin_required
def create_post():
    if request.method == "GET":
        return render_template_string(TEMPL_CREATE, title="Create Post")

    title = request.form.get("title", "")
    content = request.form.get("content", "")
    if not title.strip() or not content.strip():
        return (
            render_template_string(
                TEMPL_CREATE,
                title="Create Post",
                error="Title and content are required",
                form_title=title,
                form_content=content,
            ),
            400,
        )

    post_id = get_store().create(title, content)
    if post_id == INVALID_ID:
        current_app.logger.error("Store refused new post %r", title)
        return Response("Could not save post", status=503)

    current_app.logger.info("Created post %s", post_id)
    return redirect(url_for("blog.admin"), code=303)


@bp.route("/admin/delete/<int:post_id>", methods=["POST"])
@admin_required
def delete_post(post_id: int):
    if not get_store().delete(post_id):
        abort(404)
    current_app.logger.info("Deleted post %s", post_id)
    return redirect(url_for("blog.admin"), code=303)


###############################################################################
# Error pages
###############################################################################
@bp.app_errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Page not found"), 404


@bp.app_errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page. With debug on, Flask bypasses this handler and the
    Werkzeug debugger shows the traceback instead.
    """
    current_app.logger.error("Unhandled error: %s", exc)
    return render_template_string(TEMPL_500, title="Internal Server Error"), 500


###############################################################################
# CLI
###############################################################################
@bp.cli.command("init-db")
def cli_init_db():
    """Create the posts table (no-op if it already exists)."""
    store = get_store()
    if not isinstance(store, SqliteStore):
        click.secho("In-memory store – nothing to initialise.", fg="yellow")
        return
    store.init_schema()
    click.secho(f"✅  Database ready at {store.database}", fg="green")


@bp.cli.command("add-post")
@click.option("--title", prompt=True, help="Post title")
@click.option("--content", prompt=True, help="Post body (stored verbatim)")
def cli_add_post(title: str, content: str):
    """Publish a post without going through the dashboard."""
    if not title.strip() or not content.strip():
        raise click.UsageError("Title and content are required")
    post_id = get_store().create(title, content)
    if post_id == INVALID_ID:
        raise click.ClickException("Could not save post (see log)")
    click.echo(post_id)


@bp.cli.command("list-posts")
def cli_list_posts():
    """Print every post, newest first."""
    for p in get_store().list():
        click.echo(f"{p.id:>5}  {p.created_at.isoformat(timespec='seconds')}  {p.title}")


@bp.cli.command("delete-post")
@click.argument("post_id", type=int)
def cli_delete_post(post_id: int):
    """Delete one post by id."""
    if not get_store().delete(post_id):
        click.secho(f"No post {post_id}.", fg="red", err=True)
        raise SystemExit(1)
    click.secho(f"🗑  Deleted post {post_id}.", fg="green")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import logging

    logging.basicConfig(level=logging.INFO)
    create_app().run(host="0.0.0.0", port=PORT, threaded=True)
