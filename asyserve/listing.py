"""
HTML directory listing.

Renders the immediate children of a directory as a table of links. Every link
is absolute (built from the URL prefix of the listed directory), so navigation
works at any nesting depth. When uploads are enabled the page also carries the
upload form, which is discovered by clients through its fixed id attribute.
"""

import os
import html
import stat
import datetime
import urllib.parse
from typing import List, Optional


# stable contract with upload clients, do not change
UPLOAD_FORM_ID = 'file_submit'
UPLOAD_FIELD_NAME = 'file_to_upload'
UPLOAD_ENDPOINT = '/upload'


class DirectoryEntry:
    def __init__(self, name:str, is_dir:bool, size:Optional[int] = None, last_modified:Optional[datetime.datetime] = None):
        self.name = name
        self.is_dir = is_dir
        self.size = size
        self.last_modified = last_modified

    def sort_key(self):
        return (
            not self.is_dir,
            self.name.lower(),
            os.fsencode(self.name),
        )

    def __repr__(self):
        return 'DirectoryEntry(%r, is_dir=%s)' % (self.name, self.is_dir)


def format_file_size(size):
    """Format file size in human-readable format."""
    if size is None:
        return '-'
    if size > 1024 * 1024 * 1024:
        return f"{size / (1024*1024*1024):.1f} GB"
    elif size > 1024 * 1024:
        return f"{size / (1024*1024):.1f} MB"
    elif size > 1024:
        return f"{size / 1024:.1f} KB"
    else:
        return f"{size} B"

def display_name(name:str) -> str:
    # names that are not valid utf-8 carry surrogates, make them printable
    return os.fsencode(name).decode('utf-8', errors='replace')

def upload_action(url_prefix:str) -> str:
    return UPLOAD_ENDPOINT + '?' + urllib.parse.urlencode({'path': url_prefix})


class DirectoryRenderer:
    def __init__(self, no_symlinks:bool = False):
        self.no_symlinks = no_symlinks

    def list_entries(self, dir_path:str) -> List[DirectoryEntry]:
        """
        Lists the immediate children of dir_path, directories first.

        Entries that disappear or cannot be stat'ed while listing are kept
        without size and modification time.
        """
        entries = []
        with os.scandir(dir_path) as it:
            for dirent in it:
                try:
                    if self.no_symlinks is True and dirent.is_symlink():
                        continue
                    is_dir = dirent.is_dir()
                except OSError:
                    is_dir = False

                size = None
                last_modified = None
                try:
                    st = dirent.stat()
                    if stat.S_ISREG(st.st_mode):
                        size = st.st_size
                    last_modified = datetime.datetime.fromtimestamp(st.st_mtime, datetime.timezone.utc)
                except OSError:
                    pass

                entries.append(DirectoryEntry(dirent.name, is_dir, size, last_modified))

        entries.sort(key=DirectoryEntry.sort_key)
        return entries

    def _render_row(self, entry:DirectoryEntry, url_prefix:str):
        href = url_prefix + urllib.parse.quote(os.fsencode(entry.name))
        css_class = 'file'
        if entry.is_dir is True:
            href += '/'
            css_class = 'directory'

        modified = '-'
        if entry.last_modified is not None:
            modified = entry.last_modified.strftime('%Y-%m-%d %H:%M:%S')

        return f'''        <tr>
            <td><a class="{css_class}" href="{html.escape(href)}">{html.escape(display_name(entry.name))}</a></td>
            <td>{'-' if entry.is_dir else format_file_size(entry.size)}</td>
            <td>{modified}</td>
        </tr>
'''

    def _render_upload_form(self, url_prefix:str):
        return f'''    <form id="{UPLOAD_FORM_ID}" action="{html.escape(upload_action(url_prefix))}" method="POST" enctype="multipart/form-data">
        <p>Select a file to upload to this directory:</p>
        <input type="file" name="{UPLOAD_FIELD_NAME}">
        <button type="submit">Upload file</button>
    </form>
'''

    def render(self, dir_path:str, url_prefix:str, uploads_enabled:bool) -> str:
        """
        Renders the HTML listing of dir_path.

        Args:
            dir_path (str): Filesystem path of the directory
            url_prefix (str): URL path of the directory, ending with '/'
            uploads_enabled (bool): Include the upload form

        Returns:
            str: HTML document
        """
        if not url_prefix.endswith('/'):
            url_prefix += '/'

        entries = self.list_entries(dir_path)
        title = html.escape(display_name(urllib.parse.unquote(url_prefix)))

        rows = ''
        if url_prefix != '/':
            parent = url_prefix.rstrip('/').rsplit('/', 1)[0] + '/'
            rows += f'''        <tr>
            <td><a class="root" href="{html.escape(parent)}">..</a></td>
            <td>-</td>
            <td>-</td>
        </tr>
'''
        for entry in entries:
            rows += self._render_row(entry, url_prefix)

        upload_form = self._render_upload_form(url_prefix) if uploads_enabled is True else ''

        return f'''<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Index of {title}</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 40px; }}
        table {{ border-collapse: collapse; width: 100%; }}
        th, td {{ border-bottom: 1px solid #ddd; padding: 6px; text-align: left; }}
        a {{ text-decoration: none; color: #0066cc; }}
        a.directory {{ font-weight: bold; }}
    </style>
</head>
<body>
    <h1>Index of {title}</h1>
{upload_form}    <table>
        <tr>
            <th>Name</th>
            <th>Size</th>
            <th>Last modification</th>
        </tr>
{rows}    </table>
</body>
</html>
'''
