"""
Mathscan Tests - Sanitizer Module
"""

from mathscan.sanitizer import escape_math, sanitize_html


class TestSanitizeHtml:
    def test_script_removed_text_outside_kept(self):
        html = "<p>Keep</p><script>alert('x')</script>after"
        assert sanitize_html(html) == "<p>Keep</p>after"

    def test_nested_dangerous_containers(self):
        html = "<iframe><script>x()</script></iframe><p>ok</p>"
        assert sanitize_html(html) == "<p>ok</p>"

    def test_unknown_tags_unwrapped(self):
        html = "<div><strong>Bold</strong> text</div>"
        assert sanitize_html(html) == "<strong>Bold</strong> text"

    def test_links_lose_tag_keep_text(self):
        html = "<p>See <a href='javascript:alert(1)'>this</a></p>"
        assert sanitize_html(html) == "<p>See this</p>"

    def test_event_handlers_stripped(self):
        html = '<p onclick="steal()" style="color:red">Hi</p>'
        assert sanitize_html(html) == "<p>Hi</p>"

    def test_image_with_onerror_removed(self):
        html = "<p><img src=x onerror=alert(1)>caption</p>"
        assert sanitize_html(html) == "<p>caption</p>"

    def test_comments_removed(self):
        assert sanitize_html("<!-- hidden --><p>x</p>") == "<p>x</p>"

    def test_list_type_attribute_kept(self):
        result = sanitize_html('<ol type="a" class="fancy"><li>x</li></ol>')

        assert result == '<ol type="a"><li>x</li></ol>'

    def test_invalid_list_type_dropped(self):
        assert sanitize_html('<ol type="disc"><li>x</li></ol>') == "<ol><li>x</li></ol>"

    def test_list_start_must_be_numeric(self):
        assert sanitize_html('<ol start="3"><li>x</li></ol>') == '<ol start="3"><li>x</li></ol>'
        assert sanitize_html('<ol start="x"><li>x</li></ol>') == "<ol><li>x</li></ol>"

    def test_allowed_inline_tags(self):
        html = "<p><b>b</b> <i>i</i> <em>em</em> <code>c</code><br/></p>"
        assert sanitize_html(html) == html

    def test_empty(self):
        assert sanitize_html("") == ""

    def test_idempotent(self):
        html = "<p onclick='x'>A &amp; B</p><ul><li>\\(a<b\\)</li></ul><script>y</script>"
        once = sanitize_html(html)

        assert sanitize_html(once) == once


class TestEscapeMath:
    def test_inline_span(self):
        assert escape_math("\\(a<b\\)") == "\\(a&lt;b\\)"

    def test_display_span(self):
        assert escape_math("\\[x > 0\\]") == "\\[x &gt; 0\\]"

    def test_markup_outside_math_untouched(self):
        html = "<p>\\(a<b\\)</p>"
        assert escape_math(html) == "<p>\\(a&lt;b\\)</p>"
