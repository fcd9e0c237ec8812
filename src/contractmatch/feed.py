from __future__ import annotations

import secrets
from typing import List, Sequence

from .errors import DocumentNotFound
from .models import POST_CATEGORIES, POSTS, Comment, Post
from .store import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, BaseDocumentStore, Order


class FeedService:
    def __init__(self, store: BaseDocumentStore) -> None:
        self._store = store

    async def list_posts(self, limit: int | None = None) -> List[Post]:
        docs = await self._store.query(POSTS, ordering=[Order("createdAt", descending=True)]).get()
        if limit is not None:
            docs = docs[: max(limit, 0)]
        return [Post.from_doc(doc.id, doc.data) for doc in docs]

    async def get_post(self, post_id: str) -> Post:
        doc = await self._store.get(POSTS, post_id)
        if doc is None:
            raise DocumentNotFound(f"post {post_id} not found")
        return Post.from_doc(doc.id, doc.data)

    async def create_post(
        self,
        author_id: str,
        content: str,
        category: str = "general",
        images: Sequence[str] = (),
    ) -> Post:
        content = content.strip()
        if not content:
            raise ValueError("post content must not be empty")
        if category not in POST_CATEGORIES:
            raise ValueError(f"unknown post type: {category}")
        post_id = await self._store.create(
            POSTS,
            {
                "userId": author_id,
                "content": content,
                "images": list(images),
                "likes": [],
                "comments": [],
                "type": category,
                "createdAt": SERVER_TIMESTAMP,
            },
        )
        return await self.get_post(post_id)

    async def toggle_like(self, post_id: str, uid: str) -> Post:
        post = await self.get_post(post_id)
        change = ArrayRemove(uid) if uid in post.likes else ArrayUnion(uid)
        await self._store.update(POSTS, post_id, {"likes": change})
        return await self.get_post(post_id)

    async def add_comment(self, post_id: str, uid: str, text: str) -> Post:
        text = text.strip()
        if not text:
            raise ValueError("comment must not be empty")
        await self.get_post(post_id)
        comment = Comment(comment_id=secrets.token_hex(8), author_id=uid, content=text, created_at=self._store.now())
        await self._store.update(POSTS, post_id, {"comments": ArrayUnion(comment.to_doc())})
        return await self.get_post(post_id)
