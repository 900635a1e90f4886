from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

import handlers
from models import db, BlogPost
from schemas import CreateBlogPostInput


@pytest.fixture
def author(make_user):
    return make_user(email='editor@example.com', is_admin=True)


def add_post(author, slug, is_published=True, published_at=None, created_at=None):
    post = BlogPost(title=slug.title(), slug=slug, content='Body', author_id=author.id,
                    is_published=is_published, published_at=published_at)
    if created_at is not None:
        post.created_at = created_at
    db.session.add(post)
    db.session.commit()
    return post


def test_create_draft_post(app, author):
    post = handlers.create_blog_post(CreateBlogPostInput(
        title='Launch', slug='launch', content='We are live', author_id=author.id))
    assert post['is_published'] is False
    assert post['published_at'] is None
    assert post['excerpt'] is None


def test_create_published_post_sets_publication_date(app, author):
    post = handlers.create_blog_post(CreateBlogPostInput(
        title='Launch', slug='launch', content='We are live', excerpt='Live', author_id=author.id,
        is_published=True))
    assert post['is_published'] is True
    assert post['published_at'] is not None


def test_create_post_requires_author(app):
    with pytest.raises(handlers.NotFound, match='Author with id 99 not found'):
        handlers.create_blog_post(CreateBlogPostInput(title='x', slug='x', content='x', author_id=99))


def test_create_post_rejects_duplicate_slug(app, author):
    add_post(author, 'launch')
    with pytest.raises(IntegrityError):
        handlers.create_blog_post(CreateBlogPostInput(title='x', slug='launch', content='x', author_id=author.id))


def test_public_listing_is_published_only_newest_first(app, author):
    add_post(author, 'older', published_at=datetime(2024, 1, 1))
    add_post(author, 'newer', published_at=datetime(2024, 3, 1))
    add_post(author, 'draft', is_published=False)
    add_post(author, 'no-date', is_published=True, published_at=None)

    assert [p['slug'] for p in handlers.get_blog_posts()] == ['newer', 'older']
    assert handlers.get_blog_post_by_slug('newer')['title'] == 'Newer'
    assert handlers.get_blog_post_by_slug('draft') is None
    assert handlers.get_blog_post_by_slug('missing') is None


def test_admin_listing_includes_drafts_by_creation(app, author):
    add_post(author, 'first', created_at=datetime(2024, 1, 1), published_at=datetime(2024, 1, 1))
    add_post(author, 'second', is_published=False, created_at=datetime(2024, 2, 1))

    assert [p['slug'] for p in handlers.get_all_blog_posts_for_admin()] == ['second', 'first']
