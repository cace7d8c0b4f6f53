from setuptools import setup

setup (name = 'cs.isobmff',
       version = '20261019',
       description = 'Bounds safe dissection of ISO Base Media File Format (MP4) box trees.',
       author = 'Cameron Simpson',
       author_email = 'cs@cskk.id.au',
       package_dir = {'': 'lib/python'},
       packages = ['cs'],
       python_requires = '>=3.8',
       install_requires = [
           'cs.binary',
           'cs.cmdutils',
           'cs.lex',
           'cs.logutils',
           'cs.pfx',
           'cs.threads',
           'icontract',
           'typeguard',
       ],
       extras_require = {
           'test': ['pytest'],
       },
       entry_points = {
           'console_scripts': ['isobmff = cs.isobmff:main'],
       })
