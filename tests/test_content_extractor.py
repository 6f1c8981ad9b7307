"""Tests for content_extractor.py"""

from linkvault.core.content_extractor import (
    clean_text,
    count_words,
    detect_content_type,
    extract_full_content,
    extract_link_metadata,
)

ARTICLE_HTML = """
<html>
<head>
  <title>Understanding Vector Search</title>
  <meta name="description" content="A gentle introduction to embeddings.">
  <meta property="og:image" content="https://example.com/cover.png">
  <meta property="og:site_name" content="Example Blog">
  <meta name="author" content="Ada Lovelace">
  <link rel="icon" href="/static/icon.png">
</head>
<body>
  <nav>Home | About | Contact</nav>
  <article>
    <h1>Understanding Vector Search</h1>
    <p>Vector search compares documents by the meaning of their text rather than exact words.</p>
    <p>Each document is turned into an embedding, a list of numbers produced by a model.</p>
    <p>Similar documents end up close to each other, which is measured with cosine similarity.</p>
    <time datetime="2024-03-01">March 1, 2024</time>
  </article>
  <footer>Copyright Example</footer>
  <script>var tracking = true;</script>
</body>
</html>
"""


class TestDetectContentType:
    def test_tweet(self):
        assert detect_content_type("https://twitter.com/user/status/1") == "tweet"
        assert detect_content_type("https://x.com/user/status/1") == "tweet"

    def test_video(self):
        assert detect_content_type("https://www.youtube.com/watch?v=abc") == "video"
        assert detect_content_type("https://youtu.be/abc") == "video"

    def test_article_by_domain_or_path(self):
        assert detect_content_type("https://medium.com/@me/post") == "article"
        assert detect_content_type("https://example.com/blog/hello") == "article"

    def test_webpage(self):
        assert detect_content_type("https://example.com/") == "webpage"

    def test_lookalike_domain_is_not_video(self):
        assert detect_content_type("https://notyoutube.com/watch") == "webpage"


class TestTextHelpers:
    def test_clean_text_collapses_whitespace(self):
        assert clean_text("  a   b \n\n\n\n c  ") == "a b\n\nc"

    def test_count_words(self):
        assert count_words("one two  three\nfour") == 4
        assert count_words("") == 0


class TestExtractLinkMetadata:
    def test_reads_head_metadata(self):
        meta = extract_link_metadata(ARTICLE_HTML, "https://example.com/blog/vectors")

        assert meta.title == "Understanding Vector Search"
        assert meta.description == "A gentle introduction to embeddings."
        assert meta.image == "https://example.com/cover.png"
        assert meta.site_name == "Example Blog"
        assert meta.favicon == "https://example.com/static/icon.png"
        assert "Vector search compares documents" in meta.content
        assert "tracking" not in meta.content

    def test_falls_back_to_hostname(self):
        meta = extract_link_metadata("<html><body></body></html>", "https://example.org/x")

        assert meta.title == "example.org"
        assert meta.site_name == "example.org"
        assert meta.favicon == "https://example.org/favicon.ico"

    def test_to_dict_uses_site_name_key(self):
        meta = extract_link_metadata(ARTICLE_HTML, "https://example.com/")
        data = meta.to_dict()
        assert data["siteName"] == "Example Blog"
        assert set(data) == {"title", "description", "image", "siteName", "favicon", "content"}


class TestExtractFullContent:
    def test_article_body_and_attribution(self):
        content = extract_full_content(ARTICLE_HTML, "https://example.com/blog/vectors")

        assert content.content_type == "article"
        assert content.title == "Understanding Vector Search"
        assert "cosine similarity" in content.full_text
        assert "Home | About" not in content.full_text
        assert "Copyright" not in content.full_text
        assert content.author == "Ada Lovelace"
        assert content.published_date == "2024-03-01"
        assert content.word_count == count_words(content.full_text)

    def test_video_uses_title_and_description(self):
        html = """
        <html><head>
          <meta property="og:title" content="Learning Python">
          <meta property="og:description" content="A beginner course.">
        </head><body></body></html>
        """
        content = extract_full_content(html, "https://www.youtube.com/watch?v=1")

        assert content.content_type == "video"
        assert content.full_text.startswith("Learning Python")
        assert "A beginner course." in content.full_text

    def test_tweet_text(self):
        html = '<html><body><div data-testid="tweetText">Shipping the new release today!</div></body></html>'
        content = extract_full_content(html, "https://twitter.com/dev/status/42")

        assert content.content_type == "tweet"
        assert content.full_text == "Shipping the new release today!"
